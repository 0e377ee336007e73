"""
Quota Service package for the Quota Access Layer.

The service fronts client requests, enforcing:
- Caller identification: bearer tokens carry the user id and quota tier
- Rate limiting: a Redis token bucket evaluated atomically per request

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.ratelimit: Token-bucket evaluator, tier table and enforcement guard.
- app.domain: Cross-cutting domain helpers (e.g., auth middleware).
"""
