"""AppJson: JSON request decoding and JSON responses with one rejection type.

Invariants:
    - Every body-decoding failure becomes JsonRejection, with the status a JSON
      extractor would use: 415 wrong content type, 400 syntax, 422 schema
    - AppJson responses always carry Content-Type: application/json

Design Decisions:
    - Usable two ways: json_body(Model) as a FastAPI dependency for handlers that
      want the raw request, or a plain pydantic body parameter; for the latter
      AppRoute checks the content type (415) and error_handlers.py maps
      FastAPI's RequestValidationError onto the same 400/422 messages
"""

import json
from typing import Any, TypeVar

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from timeseries_api.core.errors import JsonRejection

ModelT = TypeVar("ModelT", bound=BaseModel)

MISSING_JSON_CONTENT_TYPE = "Expected request with `Content-Type: application/json`"
JSON_SYNTAX_ERROR = "Failed to parse the request body as JSON"
JSON_DATA_ERROR = "Failed to deserialize the JSON body into the target type"


def is_json_content_type(content_type: str | None) -> bool:
    """application/json and any application/*+json media type."""
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime == "application/json":
        return True
    return mime.startswith("application/") and mime.endswith("+json")


def describe_errors(errors: list[dict[str, Any]]) -> str:
    """Flatten pydantic errors to 'field: message; ...' (the 'body' segment dropped)."""
    parts = []
    for e in errors:
        loc = [str(p) for p in e.get("loc", ()) if p != "body"]
        msg = e.get("msg", "invalid value")
        parts.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return "; ".join(parts)


class AppJson(JSONResponse):
    """JSON response body; decode() is the request-side half."""

    @staticmethod
    async def decode(request: Request, model: type[ModelT]) -> ModelT:
        """Read and validate the request body, or raise JsonRejection."""
        if not is_json_content_type(request.headers.get("content-type")):
            raise JsonRejection(415, MISSING_JSON_CONTENT_TYPE)
        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise JsonRejection(400, f"{JSON_SYNTAX_ERROR}: {e}") from e
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise JsonRejection(
                422, f"{JSON_DATA_ERROR}: {describe_errors(e.errors())}",
            ) from e


def json_body(model: type[ModelT]) -> Any:
    """Dependency marker: `body: Widget = json_body(Widget)`."""

    async def decode_body(request: Request) -> ModelT:
        return await AppJson.decode(request, model)

    return Depends(decode_body)
