"""
Sample workloads for an event-registration REST API.

These are ordinary workload functions -- the engine treats them as
opaque callables -- that exercise a typical "events" service:

- ``GET  /health/live``
- ``POST /auth/register`` and ``POST /auth/login`` (returns ``token``)
- ``GET  /events``, ``POST /events``, ``GET /events/<id>/slots``
- ``GET  /events/<id>/check-registration``, ``POST /events/<id>/register``
- ``GET  /events/user/registrations``

Expensive credentials are amortized through shared pools: every
successful login appends its token to the ``tokens`` pool, and browsing
iterations on any VU reuse a random cached token instead of logging in
again.  All random branching goes through ``ctx.rng`` so a seeded
scenario is reproducible.

Workload variables (``env`` in the document or ``-e`` on the CLI):

- ``BASE_URL`` -- API root, default ``http://localhost:5000/api``
- ``THINK_TIME_SCALE`` -- multiplier for think-time sleeps, default ``1``
- ``REQUEST_TIMEOUT`` -- per-request timeout in seconds, default ``10``
- ``CREATE_EVENT_RATE`` -- share of browsing iterations that create an
  event, default ``0.01``

Key Concepts Demonstrated:
- Reuse-first credential strategy with a bounded shared pool
- Per-VU ``requests.Session`` for connection pooling
- Per-endpoint latency trends tagged with ``name``
- Flows wrapped in ``ctx.group`` so their events carry a ``group`` tag
"""

from __future__ import annotations

import logging
import string
import time
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from stampede.shared import SharedPools
from stampede.workload import IterationContext

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5000/api"
DEFAULT_PASSWORD = "testpassword"
TOKENS_POOL = "tokens"
USERS_POOL = "users"

FAILED_REQUESTS = "failed_requests"
TIMEOUT_ERRORS = "timeout_errors"
API_LATENCY = "api_latency"
HTTP_REQ_DURATION = "http_req_duration"


# =====================================================================
# Helpers
# =====================================================================


def _safe_json(response: requests.Response) -> Any:
    """Return the parsed JSON body, or ``None`` if it is not JSON."""
    try:
        return response.json()
    except ValueError:
        return None


def _session(ctx: IterationContext) -> requests.Session:
    session = ctx.vu_state.get("session")
    if session is None:
        session = requests.Session()
        session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        ctx.vu_state["session"] = session
    return session


def _think(ctx: IterationContext, low: float, high: float) -> None:
    scale = float(ctx.env.get("THINK_TIME_SCALE", "1"))
    if scale > 0:
        ctx.sleep(ctx.rng.uniform(low, high) * scale)


def auth_header(token: str) -> dict[str, str]:
    """Bearer authorization header for *token*."""
    return {"Authorization": f"Bearer {token}"}


def unique_user_identity(ctx: IterationContext) -> tuple[str, str, str]:
    """
    Generate collision-free credentials for a fresh registration.

    Combines a millisecond timestamp, the VU id and a random suffix
    drawn from the VU's random source.

    Returns:
        A ``(username, email, password)`` tuple.
    """
    suffix = "".join(ctx.rng.choices(string.ascii_lowercase + string.digits, k=6))
    username = f"k6user_{int(time.time() * 1000)}_{ctx.vu_id}_{suffix}"
    return username, f"{username}@example.com", DEFAULT_PASSWORD


def request(
    ctx: IterationContext,
    method: str,
    path: str,
    name: str,
    **kwargs: Any,
) -> requests.Response | None:
    """
    Send one request and record its latency under ``http_req_duration``.

    The timeout never exceeds what is left of the iteration deadline.
    Transport errors are counted (``failed_requests``, and
    ``timeout_errors`` for timeouts) and reported as ``None``.
    """
    timeout = min(float(ctx.env.get("REQUEST_TIMEOUT", "10")), ctx.remaining())
    url = f"{ctx.env.get('BASE_URL', DEFAULT_BASE_URL).rstrip('/')}{path}"
    started = time.monotonic()
    try:
        response = _session(ctx).request(method, url, timeout=max(timeout, 0.001), **kwargs)
    except requests.Timeout:
        ctx.count(TIMEOUT_ERRORS, tags={"name": name})
        ctx.count(FAILED_REQUESTS, tags={"name": name})
        return None
    except requests.RequestException as exc:
        logger.debug("%s %s failed: %s", method, url, exc)
        ctx.count(FAILED_REQUESTS, tags={"name": name})
        return None

    ctx.trend(HTTP_REQ_DURATION, (time.monotonic() - started) * 1000.0, {"name": name})
    ctx.count("http_reqs", tags={"name": name, "status": response.status_code})
    return response


def _expect(ctx: IterationContext, response: requests.Response | None, status: int, label: str) -> bool:
    ok = ctx.check(label, response is not None and response.status_code == status)
    if response is not None and not ok:
        ctx.count(FAILED_REQUESTS, tags={"check": label})
    return ok


def _login(ctx: IterationContext, username: str, password: str) -> str | None:
    response = request(
        ctx,
        "POST",
        "/auth/login",
        "loginRequest",
        json={"username": username, "password": password},
    )
    if not _expect(ctx, response, 200, "login successful"):
        return None

    body = _safe_json(response)
    token = body.get("token") if isinstance(body, dict) else None
    if not isinstance(token, str) or not token:
        ctx.count(FAILED_REQUESTS, tags={"name": "loginRequest"})
        return None

    ctx.count("successful_logins")
    ctx.pool(TOKENS_POOL).append(token)
    return token


# =====================================================================
# Workloads
# =====================================================================


def health_check(ctx: IterationContext) -> bool:
    """Probe the liveness endpoint."""
    with ctx.group("health_check"):
        response = request(ctx, "GET", "/health/live", "healthCheck")
        ok = _expect(ctx, response, 200, "health endpoint is up")
        if ok:
            ctx.trend(API_LATENCY, response.elapsed.total_seconds() * 1000.0)
    _think(ctx, 0.5, 1.0)
    return ok


def _register_and_login(ctx: IterationContext) -> bool:
    username, email, password = unique_user_identity(ctx)
    response = request(
        ctx,
        "POST",
        "/auth/register",
        "registerRequest",
        json={"username": username, "email": email, "password": password},
    )
    if not _expect(ctx, response, 201, "registration successful"):
        return False
    ctx.count("successful_registrations")
    return _login(ctx, username, password) is not None


def user_auth(ctx: IterationContext) -> bool:
    """Register a brand-new account, log in, and cache the token."""
    with ctx.group("user_authentication"):
        ok = _register_and_login(ctx)
    _think(ctx, 1.0, 3.0)
    return ok


def login_existing(ctx: IterationContext) -> bool:
    """
    Log in as a pre-generated user from the ``users`` pool.

    One iteration in ten registers a fresh account instead, a 90/10
    login/register traffic split.
    """
    with ctx.group("user_authentication"):
        user = None if ctx.rng.random() <= 0.1 else ctx.pool(USERS_POOL).sample(ctx.rng)
        if user is None:
            return _register_and_login(ctx)
        return _login(ctx, user["username"], user["password"]) is not None


def browse_events(ctx: IterationContext) -> bool:
    """
    Browse events with a cached token.

    Skips (and counts ``skipped_iterations``) while no token has been
    cached yet.  Of the iterations that list events, half open one
    event's slots, a tenth of those check and possibly register, and
    four in ten also list the user's registrations.  Independently, a
    ``CREATE_EVENT_RATE`` share (default one in a hundred) creates a
    new event.
    """
    token = ctx.pool(TOKENS_POOL).sample(ctx.rng)
    if token is None:
        ctx.count("skipped_iterations")
        return True
    headers = auth_header(token)

    with ctx.group("browse_events"):
        ok = _browse(ctx, headers)

    if ctx.rng.random() < float(ctx.env.get("CREATE_EVENT_RATE", "0.01")):
        ok = _create_event(ctx, headers) and ok

    _think(ctx, 2.0, 5.0)
    return ok


def _browse(ctx: IterationContext, headers: Mapping[str, str]) -> bool:
    response = request(ctx, "GET", "/events", "getEvents", headers=headers)
    if not _expect(ctx, response, 200, "get events successful"):
        return False
    ctx.trend(API_LATENCY, response.elapsed.total_seconds() * 1000.0)

    events = _safe_json(response)
    ok = True
    if isinstance(events, list) and events and ctx.rng.random() <= 0.5:
        event = ctx.rng.choice(events)
        details = request(ctx, "GET", f"/events/{event['id']}/slots", "getEventDetails", headers=headers)
        ok = _expect(ctx, details, 200, "get event details successful") and ok

        if ctx.rng.random() <= 0.1:
            ok = _register_for_event(ctx, event["id"], headers) and ok

    if ctx.rng.random() <= 0.4:
        registrations = request(
            ctx, "GET", "/events/user/registrations", "getUserRegistrations", headers=headers
        )
        ok = _expect(ctx, registrations, 200, "get user registrations successful") and ok
    return ok


def _register_for_event(ctx: IterationContext, event_id: Any, headers: Mapping[str, str]) -> bool:
    status = request(
        ctx, "GET", f"/events/{event_id}/check-registration", "checkRegistration", headers=headers
    )
    body = _safe_json(status) if status is not None and status.status_code == 200 else None
    if isinstance(body, dict) and body.get("isRegistered") is True:
        return True

    response = request(ctx, "POST", f"/events/{event_id}/register", "registerEvent", json={}, headers=headers)
    ok = _expect(ctx, response, 200, "event registration successful")
    if ok:
        ctx.count("event_registrations")
    return ok


def _create_event(ctx: IterationContext, headers: Mapping[str, str]) -> bool:
    schedule = datetime.now(timezone.utc) + timedelta(days=30)
    payload = {
        "title": f"Load Test Event {int(time.time() * 1000)}",
        "description": "This is an event created by the load test",
        "org_id": 1,
        "venue": "Test Venue",
        "schedule": schedule.isoformat(),
        "is_free": True,
        "max_capacity": 100,
    }
    with ctx.group("create_event"):
        response = request(ctx, "POST", "/events", "createEvent", json=payload, headers=headers)
        ok = _expect(ctx, response, 201, "create event successful")
        if ok:
            ctx.count("events_created")
    return ok


def mixed(ctx: IterationContext) -> bool:
    """Weighted blend: 20 % health checks, 30 % auth, 50 % browsing."""
    roll = ctx.rng.random()
    if roll < 0.2:
        return health_check(ctx)
    if roll < 0.5:
        return user_auth(ctx)
    return browse_events(ctx)


# =====================================================================
# Setup hooks
# =====================================================================


def seed_users(pools: SharedPools, env: Mapping[str, str]) -> None:
    """
    Fill the ``users`` pool with pre-generated accounts.

    Generates ``loadtest0`` .. ``loadtest<N-1>`` where ``N`` is
    ``USER_COUNT`` from the workload variables, or the pool capacity.
    """
    users = pools.get(USERS_POOL)
    count = int(env.get("USER_COUNT", users.capacity))
    for index in range(count):
        users.append(
            {
                "username": f"loadtest{index}",
                "email": f"loadtest{index}@example.com",
                "password": DEFAULT_PASSWORD,
            }
        )
    logger.info("Seeded %d users into pool %r", count, USERS_POOL)
