"""Health & Readiness Probes: liveness and readiness endpoints for container orchestration.

Invariants:
    - GET /health always returns 200 "OK" if the process is up (liveness); no state access
    - GET /health/ready returns 503 if the database is unreachable (readiness)

Design Decisions:
    - Separate liveness/readiness: liveness restarts, readiness removes from load balancer
    - Both unprefixed: probes must not move when the API version changes
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, PlainTextResponse

from timeseries_api.api.error_handlers import AppRoute
from timeseries_api.api.state import StateDep

router = APIRouter(tags=["health"], route_class=AppRoute)


@router.get("/health", response_class=PlainTextResponse)
async def health_check():
    """Basic liveness probe. Returns 200 if the process is up."""
    return "OK"


@router.get("/health/ready")
async def readiness_check(state: StateDep):
    """Readiness probe: includes database connectivity."""
    if not await state.db.ping():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"message": "database unavailable"},
        )
    return {"status": "ready"}
