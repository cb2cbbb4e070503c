"""Application State: the shared pool handle every handler receives.

Invariants:
    - One AppState per ApiServer, stored on app.state.app_state
    - Handlers see the pool only through the ReadableDatabase capability

Design Decisions:
    - Injected with Depends(get_app_state) rather than imported as a global:
      handlers stay testable against any ReadableDatabase
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from timeseries_api.infrastructure.database import ReadableDatabase


@dataclass(frozen=True)
class AppState:
    db: ReadableDatabase


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the shared state (by reference, never copied)."""
    return request.app.state.app_state


StateDep = Annotated[AppState, Depends(get_app_state)]
