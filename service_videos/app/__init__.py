"""
Video Service package for VideoHub.

Structure:
- app.main: FastAPI app, routes and service wiring.
- app.caching: Redis store adapter, key derivation, TTL policy, read-through
  wrapper, invalidation and route decorator.
- app.adapters: System-of-record repository and recommendation provider.
- app.models: Request bodies.
"""
