"""Request Middleware: per-request span, fault logging, and CORS installation.

Invariants:
    - ErrorLoggingMiddleware never changes a response; its only effect is one log record
    - A response carrying the error marker is logged exactly once, at ERROR
    - Responses without the marker (successes, client rejections) produce no fault log
    - The span is opened before the downstream call and closed on every exit path

Design Decisions:
    - The span does not log 5xx responses itself: fault logging belongs to
      ErrorLoggingMiddleware, so a failure is never reported twice
    - The matched route is read after the downstream call: routing fills
      scope["route"] on the shared scope dict
"""

import logging
import time
import uuid

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response

from timeseries_api.config import HttpCorsConfig
from timeseries_api.infrastructure.observability import (
    close_span,
    open_span,
    update_span,
)

logger = logging.getLogger(__name__)

FAULT_MESSAGE = "an unexpected error occurred inside a handler"


class RequestSpanMiddleware(BaseHTTPMiddleware):
    """Open a span with method, URI and request id; record the matched route on close."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        token = open_span(
            request_id=request_id,
            method=request.method,
            uri=str(request.url.path)
            + (f"?{request.url.query}" if request.url.query else ""),
        )
        start = time.perf_counter()
        try:
            response = await call_next(request)
            route = request.scope.get("route")
            update_span(matched_path=getattr(route, "path", None))
            duration_ms = (time.perf_counter() - start) * 1000
            logger.debug(
                "request span closed",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            close_span(token)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Log the error marker attached by a failed handler, if any."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        # Materialize scope["state"] so the handler's Request writes into the same dict
        state = request.state
        response = await call_next(request)
        err = getattr(state, "app_error", None)
        if err is not None:
            cause = getattr(err, "cause", None) or getattr(err, "error", None) or err
            logger.error(
                FAULT_MESSAGE,
                exc_info=cause,
                extra={"error": repr(err), "error_code": err.code},
            )
        return response


def configure_cors(app: FastAPI, cors: HttpCorsConfig) -> None:
    """Install the allow-origin policy as a response layer."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors.allow_origins),
        allow_methods=list(cors.allow_methods),
        allow_headers=list(cors.allow_headers),
        allow_credentials=cors.allow_credentials,
        max_age=cors.max_age,
    )
