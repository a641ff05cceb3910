"""
In-memory mock of the event-registration API used by workload tests.

A small Flask application exposing the endpoints the sample workloads
in :mod:`stampede.workloads.event_api` call.  Tokens are real HS256
JWTs issued and verified with PyJWT, so the workloads exercise the same
bearer-token round trip they would against the real service.

Key Concepts Demonstrated:
- Application factory for an isolated test double
- JWT issue/verify with canonical claims (iat, exp)
- Thread-safe in-memory state for a threaded live server
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any

import jwt
from faker import Faker
from flask import Flask, Response, g, jsonify, request

JWT_SECRET = "h" * 64
JWT_ALGORITHM = "HS256"
DEFAULT_PASSWORD = "testpassword"


class EventStore:
    """Users, events and registrations guarded by a single lock."""

    def __init__(self, event_count: int = 5, preloaded_users: int = 0, seed: int = 1234) -> None:
        fake = Faker()
        fake.seed_instance(seed)
        self.lock = threading.Lock()
        self.users: dict[str, dict[str, Any]] = {}
        self.events = [
            {"id": index, "name": fake.catch_phrase(), "capacity": 100}
            for index in range(1, event_count + 1)
        ]
        self.registrations: dict[int, set[int]] = {}
        for index in range(preloaded_users):
            self.add_user(f"loadtest{index}", f"loadtest{index}@example.com", DEFAULT_PASSWORD)

    def add_user(self, username: str, email: str, password: str) -> dict[str, Any] | None:
        with self.lock:
            if username in self.users:
                return None
            user = {"id": len(self.users) + 1, "username": username, "email": email, "password": password}
            self.users[username] = user
            self.registrations[user["id"]] = set()
            return user

    def event(self, event_id: int) -> dict[str, Any] | None:
        return next((event for event in self.events if event["id"] == event_id), None)


def create_token(user: dict[str, Any], expiry_minutes: int = 60) -> str:
    """Issue an HS256 JWT carrying ``user_id`` and ``username``."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user["id"],
        "username": user["username"],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expiry_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_app(
    event_count: int = 5,
    preloaded_users: int = 20,
    latency: float = 0.0,
) -> Flask:
    """
    Build the mock API.

    Args:
        event_count: Number of events returned by ``GET /api/events``.
        preloaded_users: ``loadtest<N>`` accounts that can log in
            without registering (password ``testpassword``).
        latency: Artificial delay added to every request, in seconds.
    """
    app = Flask(__name__)
    app.config["TESTING"] = True
    store = EventStore(event_count=event_count, preloaded_users=preloaded_users)
    app.extensions["event_store"] = store

    if latency:

        @app.before_request
        def _delay() -> None:
            time.sleep(latency)

    def require_token(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            header = request.headers.get("Authorization", "")
            if not header.startswith("Bearer "):
                return jsonify({"error": "Missing bearer token"}), 401
            try:
                g.claims = jwt.decode(header[7:].strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
            except jwt.InvalidTokenError:
                return jsonify({"error": "Invalid token"}), 401
            return view(*args, **kwargs)

        return wrapper

    # -----------------------------------------------------------------
    # Health and auth
    # -----------------------------------------------------------------

    @app.get("/api/health/live")
    def health_live() -> tuple[Response, int]:
        return jsonify({"status": "ok"}), 200

    @app.post("/api/auth/register")
    def register() -> tuple[Response, int]:
        data = request.get_json(silent=True) or {}
        if not all(data.get(key) for key in ("username", "email", "password")):
            return jsonify({"error": "username, email and password are required"}), 400
        user = store.add_user(data["username"], data["email"], data["password"])
        if user is None:
            return jsonify({"error": "Username already exists"}), 409
        return jsonify({"id": user["id"], "username": user["username"]}), 201

    @app.post("/api/auth/login")
    def login() -> tuple[Response, int]:
        data = request.get_json(silent=True) or {}
        user = store.users.get(data.get("username", ""))
        if user is None or user["password"] != data.get("password"):
            return jsonify({"error": "Invalid credentials"}), 401
        return jsonify({"token": create_token(user), "user_id": user["id"]}), 200

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    @app.get("/api/events")
    @require_token
    def list_events() -> tuple[Response, int]:
        with store.lock:
            events = list(store.events)
        return jsonify(events), 200

    @app.post("/api/events")
    @require_token
    def create_event() -> tuple[Response, int]:
        data = request.get_json(silent=True) or {}
        if not data.get("title") or not data.get("schedule"):
            return jsonify({"error": "title and schedule are required"}), 400
        with store.lock:
            event = {
                "id": len(store.events) + 1,
                "name": data["title"],
                "capacity": int(data.get("max_capacity", 100)),
            }
            store.events.append(event)
        return jsonify(event), 201

    @app.get("/api/events/<int:event_id>/slots")
    @require_token
    def event_slots(event_id: int) -> tuple[Response, int]:
        event = store.event(event_id)
        if event is None:
            return jsonify({"error": "Event not found"}), 404
        with store.lock:
            taken = sum(1 for events in store.registrations.values() if event_id in events)
        return jsonify({"eventId": event_id, "available": event["capacity"] - taken}), 200

    @app.get("/api/events/<int:event_id>/check-registration")
    @require_token
    def check_registration(event_id: int) -> tuple[Response, int]:
        with store.lock:
            registered = event_id in store.registrations.get(g.claims["user_id"], set())
        return jsonify({"isRegistered": registered}), 200

    @app.post("/api/events/<int:event_id>/register")
    @require_token
    def register_for_event(event_id: int) -> tuple[Response, int]:
        if store.event(event_id) is None:
            return jsonify({"error": "Event not found"}), 404
        with store.lock:
            events = store.registrations.setdefault(g.claims["user_id"], set())
            if event_id in events:
                return jsonify({"error": "Already registered"}), 409
            events.add(event_id)
        return jsonify({"eventId": event_id, "registered": True}), 200

    @app.get("/api/events/user/registrations")
    @require_token
    def user_registrations() -> tuple[Response, int]:
        with store.lock:
            events = sorted(store.registrations.get(g.claims["user_id"], set()))
        return jsonify([{"eventId": event_id} for event_id in events]), 200

    return app
