"""Error Hierarchy: typed exceptions for the storage layer and the HTTP error envelope.

Invariants:
    - Every error has a message (str), a code (str) and an HTTP status (int)
    - to_response() always produces the same shape: {"message": "<string>"}
    - Client errors (is_fault=False) are never logged as server faults
    - Store errors keep the driver's message as text; the driver exception is chained

Design Decisions:
    - Two families under one base: DatabaseError (storage layer, raised by
      infrastructure/database.py) and AppError (the envelope a handler failure
      becomes). New handler failures add an AppError subclass, never a new shape
    - No FastAPI import here: api/error_handlers.py turns to_response() into a JSONResponse
    - RepairAborted from the embedded-database heritage is not modelled: a
      networked pool has no repair session to abort
"""


class TimeseriesError(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, code: str, http_status: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    def to_response(self) -> dict:
        """Body of the JSON error response."""
        return {"message": self.message}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, message={self.message!r})"
        )


# ─── Storage Errors ──────────────────────────────────────────────

class DatabaseError(TimeseriesError):
    """Opening or using the connection pool failed."""

    def __init__(self, message: str, code: str):
        super().__init__(message, code, 503)


class DatabaseAlreadyOpenError(DatabaseError):
    """An exclusive pool is already open against the same connection string."""

    def __init__(self):
        super().__init__(
            "Database already open. Cannot acquire lock.", "DATABASE_ALREADY_OPEN",
        )


class DatabaseCorruptedError(DatabaseError):
    """Connect, acquire or query failure; detail is the driver's message."""

    def __init__(self, detail: str):
        super().__init__(f"Database corrupted: {detail}", "DATABASE_CORRUPTED")
        self.detail = detail


class PropertyNotFoundError(DatabaseError):
    """A required server property (setting, extension, column) is missing."""

    def __init__(self, prop: str):
        super().__init__(
            f"Database property not found: {prop}", "PROPERTY_NOT_FOUND",
        )
        self.prop = prop


# ─── Error Envelope ──────────────────────────────────────────────

class AppError(TimeseriesError):
    """A handler-level failure, converted to {"message": ...} with its status."""

    is_fault = True


class JsonRejection(AppError):
    """The request body could not be decoded as the handler's JSON type."""

    is_fault = False

    def __init__(self, http_status: int, body_text: str):
        super().__init__(body_text, "JSON_REJECTION", http_status)


class QueryRejection(AppError):
    """Query string or path parameters failed validation."""

    is_fault = False

    def __init__(self, body_text: str):
        super().__init__(body_text, "QUERY_REJECTION", 400)


class StoreError(AppError):
    """The storage layer failed while serving a request."""

    def __init__(self, error: DatabaseError):
        super().__init__(error.message, error.code, error.http_status)
        self.error = error


class RequestTimeout(AppError):
    """The handler did not finish within the request deadline."""

    def __init__(self, seconds: float):
        super().__init__(
            f"Request did not complete within {seconds:g}s", "REQUEST_TIMEOUT", 504,
        )
        self.seconds = seconds


class InternalError(AppError):
    """Any other exception raised by a handler. Details stay in the logs."""

    def __init__(self, cause: BaseException):
        super().__init__("An unexpected error occurred", "INTERNAL_ERROR", 500)
        self.cause = cause

    def __repr__(self) -> str:
        return f"InternalError(cause={self.cause!r})"
