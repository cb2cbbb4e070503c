"""API Layer: server, routes, middleware and the error envelope.

Invariants:
    - Handlers depend on ReadableDatabase only; nothing here can issue a write
    - All error responses share the {"message": ...} shape

Design Decisions:
    - Routes registered explicitly through ApiServer.add_route (no auto-discovery)
"""
