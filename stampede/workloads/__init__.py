"""
Ready-made workloads.

Reference them from a scenario document with ``exec``, e.g.
``exec: stampede.workloads.event_api:browse_events``.
"""
