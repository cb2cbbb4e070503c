"""Error Handlers: turn every handler failure into the {"message": ...} envelope.

Invariants:
    - Every failure path ends in exactly one JSON response of shape {"message": "<string>"}
    - Fault responses (AppError.is_fault) carry the error marker on
      request.state.app_error; client errors never do
    - Nothing here logs a fault: ErrorLoggingMiddleware is the single place that does
    - AppRoute bounds each handler by app.state.request_timeout (0 disables)
    - Body parameters are JSON only: a route with a body answers 415 to any
      other content type before FastAPI reads the body

Design Decisions:
    - AppRoute (custom APIRoute) catches handler exceptions inside the route,
      so they become responses that still flow back through our middleware;
      an app-level Exception handler would run outside it
    - RequestValidationError split into JsonRejection (body) and QueryRejection
      (query/path) so both keep the client-error semantics
"""

import asyncio
import logging
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException

from timeseries_api.api.app_json import (
    JSON_DATA_ERROR,
    JSON_SYNTAX_ERROR,
    MISSING_JSON_CONTENT_TYPE,
    describe_errors,
    is_json_content_type,
)
from timeseries_api.core.errors import (
    AppError,
    DatabaseError,
    InternalError,
    JsonRejection,
    QueryRejection,
    RequestTimeout,
    StoreError,
)

logger = logging.getLogger(__name__)


def error_response(exc: AppError, request: Request) -> JSONResponse:
    """Build the envelope and, for faults, attach the marker the middleware looks for."""
    if exc.is_fault:
        request.state.app_error = exc
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


def rejection_from_validation(exc: RequestValidationError) -> AppError:
    """Map FastAPI's validation error onto the matching client rejection."""
    errors = list(exc.errors())
    if any(e.get("type") == "json_invalid" for e in errors):
        detail = "; ".join(
            str(e.get("ctx", {}).get("error", e.get("msg"))) for e in errors
        )
        return JsonRejection(400, f"{JSON_SYNTAX_ERROR}: {detail}")
    if errors and all(e.get("loc", ("",))[0] == "body" for e in errors):
        return JsonRejection(422, f"{JSON_DATA_ERROR}: {describe_errors(errors)}")
    return QueryRejection(f"Invalid request parameters: {describe_errors(errors)}")


class AppRoute(APIRoute):
    """APIRoute whose handler failures are converted to the error envelope."""

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def route_handler(request: Request) -> Response:
            if self.rejects_content_type(request):
                return error_response(
                    JsonRejection(415, MISSING_JSON_CONTENT_TYPE), request,
                )
            timeout = getattr(request.app.state, "request_timeout", 0) or 0
            try:
                if timeout:
                    return await asyncio.wait_for(
                        original_route_handler(request), timeout,
                    )
                return await original_route_handler(request)
            except (StarletteHTTPException, RequestValidationError):
                raise
            except AppError as exc:
                return error_response(exc, request)
            except DatabaseError as exc:
                return error_response(StoreError(exc), request)
            except asyncio.TimeoutError:
                return error_response(RequestTimeout(timeout), request)
            except Exception as exc:
                return error_response(InternalError(exc), request)

        return route_handler

    def rejects_content_type(self, request: Request) -> bool:
        """A declared body must arrive as JSON, as with json_body()."""
        if self.body_field is None:
            return False
        if is_json_content_type(request.headers.get("content-type")):
            return False
        carries_body = (
            request.headers.get("content-length", "0") != "0"
            or "transfer-encoding" in request.headers
        )
        return carries_body or self.body_field.required


def register_error_handlers(app: FastAPI) -> None:
    """Register the envelope handlers on the FastAPI app."""
    _register_app_error_handler(app)
    _register_validation_error_handler(app)
    _register_http_error_handler(app)


def _register_app_error_handler(app: FastAPI) -> None:

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return error_response(exc, request)

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        return error_response(StoreError(exc), request)


def _register_validation_error_handler(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ):
        """Bad client input: answered, never logged as a fault."""
        rejection = rejection_from_validation(exc)
        logger.info(
            f"Rejected request on {request.url.path}: {rejection.message}",
            extra={"status_code": rejection.http_status},
        )
        return error_response(rejection, request)


def _register_http_error_handler(app: FastAPI) -> None:

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        """404/405 and explicit HTTPExceptions, in the same envelope."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )
