"""
core — Plumbing shared by every FindCover package.

Modules:
    config          — Settings (pydantic-settings, env + .env)
    logging_config  — JSON / console log formatting and request context
    errors          — ErrorKind, domain exceptions, HTTP error envelope
    cache           — Redis key/value helpers and the route-cache backend
    health          — Redis, routing, store and ledger probes
    middleware      — Request id, timing and access logging
"""
