"""Connection Pool: builder-configured async pool with read-only and full capability variants.

Invariants:
    - One physical pool type (_PooledDatabase over an AsyncEngine); capability is
      decided by which class wraps it, never by a runtime flag
    - ReadOnlyDatabase has no mutating method: execute(), transaction() and the
      raw engine exist only on Database
    - create()/open() verify connectivity before returning; any connect failure
      (network, auth, malformed string) raises DatabaseCorruptedError
    - get_connection() returns the borrowed connection on every exit path,
      including cancellation, and waits at most acquire_timeout for it
    - Driver and pool errors never escape as SQLAlchemy types: they are mapped
      to DatabaseError (core/errors.py) with the driver message kept as text

Design Decisions:
    - SQLAlchemy Core (text()) over the ORM: the service runs hand-written read
      queries against TimescaleDB views, no mapped models
    - AsyncAdaptedQueuePool with max_overflow=0: max_connections is a hard cap
    - Builder is a frozen dataclass: stateless, reusable, fluent setters return copies
    - exclusive=True keeps the embedded-database "already open" guard available
      for callers that need a single owner per connection string
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from timeseries_api.core.errors import (
    DatabaseAlreadyOpenError,
    DatabaseCorruptedError,
    DatabaseError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 20
DEFAULT_ACQUIRE_TIMEOUT = 30.0

# Bare schemes get the async driver the service ships with
_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# Errors that mean "the store is unreachable or refused us"
_CONNECT_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

# Connection strings currently held by an exclusive pool in this process
_exclusive_urls: set[str] = set()

DatabaseT = TypeVar("DatabaseT", bound="_PooledDatabase")


def normalize_url(connection_string: str) -> URL:
    """Parse a connection string, choosing the async driver for bare schemes.

    libpq's sslmode query parameter is renamed to asyncpg's ssl keyword.
    """
    raw = connection_string.strip()
    scheme, sep, rest = raw.partition("://")
    if sep and scheme in _ASYNC_DRIVERS:
        raw = f"{_ASYNC_DRIVERS[scheme]}://{rest}"
    try:
        url = make_url(raw)
    except SQLAlchemyError as e:
        raise DatabaseCorruptedError(str(e)) from e
    if url.get_backend_name() == "postgresql" and "sslmode" in url.query:
        sslmode = url.query["sslmode"]
        url = url.difference_update_query(["sslmode"]).update_query_dict(
            {"ssl": sslmode},
        )
    return url


class ReadableDatabase(Protocol):
    """Query-only capability. The HTTP layer depends on this and nothing wider."""

    def get_connection(self) -> AbstractAsyncContextManager[AsyncConnection]: ...

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def fetch_one(
        self, sql: str, params: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None: ...

    async def scalar(self, sql: str, params: dict[str, Any] | None = None) -> Any: ...

    async def ping(self) -> bool: ...


class WritableDatabase(ReadableDatabase, Protocol):
    """Full capability: queries plus mutations."""

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int: ...

    def transaction(self) -> AbstractAsyncContextManager[AsyncConnection]: ...


@dataclass(frozen=True)
class Builder:
    """Pool sizing options. Pure: nothing connects until create()/open()."""

    max_connections: int = DEFAULT_MAX_CONNECTIONS
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT
    exclusive: bool = False
    echo: bool = False

    def with_max_connections(self, n: int) -> "Builder":
        if n < 1:
            raise ValueError("max_connections must be at least 1")
        return replace(self, max_connections=n)

    def with_acquire_timeout(self, seconds: float) -> "Builder":
        if seconds <= 0:
            raise ValueError("acquire_timeout must be positive")
        return replace(self, acquire_timeout=seconds)

    def with_exclusive(self, flag: bool = True) -> "Builder":
        return replace(self, exclusive=flag)

    async def create(self, connection_string: str) -> "Database":
        """Open a full-capability pool."""
        return await self.connect(connection_string, Database)

    async def open(self, connection_string: str) -> "ReadOnlyDatabase":
        """Open a read-only pool."""
        return await self.connect(connection_string, ReadOnlyDatabase)

    async def connect(
        self, connection_string: str, kind: type[DatabaseT],
    ) -> DatabaseT:
        """Build the engine, check one round trip, wrap it as `kind`."""
        url = normalize_url(connection_string)
        key = url.render_as_string(hide_password=False)
        if self.exclusive:
            # Claimed before the first await so a concurrent open sees it
            if key in _exclusive_urls:
                raise DatabaseAlreadyOpenError()
            _exclusive_urls.add(key)

        try:
            engine = create_async_engine(
                url,
                poolclass=AsyncAdaptedQueuePool,
                pool_size=self.max_connections,
                max_overflow=0,
                pool_timeout=self.acquire_timeout,
                pool_pre_ping=True,
                echo=self.echo,
            )
        except SQLAlchemyError as e:
            self._release(key)
            raise DatabaseCorruptedError(str(e)) from e

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except asyncio.CancelledError:
            self._release(key)
            await engine.dispose()
            raise
        except _CONNECT_ERRORS as e:
            self._release(key)
            await engine.dispose()
            logger.error(
                f"DB connect failed: {e}",
                extra={"db_url": url.render_as_string(hide_password=True)},
            )
            raise DatabaseCorruptedError(str(e) or type(e).__name__) from e

        logger.info(
            f"Database opened ({kind.__name__}, max_connections={self.max_connections})",
            extra={"db_url": url.render_as_string(hide_password=True)},
        )
        return kind(engine, exclusive_key=key if self.exclusive else None)

    def _release(self, key: str) -> None:
        if self.exclusive:
            _exclusive_urls.discard(key)


class _PooledDatabase:
    """The single pool type behind both capability variants."""

    def __init__(self, engine: AsyncEngine, exclusive_key: str | None = None):
        self._engine = engine
        self._exclusive_key = exclusive_key

    @classmethod
    def builder(cls) -> Builder:
        return Builder()

    @classmethod
    async def create(cls: type[DatabaseT], connection_string: str) -> DatabaseT:
        """Open with the default Builder."""
        return await Builder().connect(connection_string, cls)

    @classmethod
    async def open(
        cls: type[DatabaseT], connection_string: str, builder: Builder | None = None,
    ) -> DatabaseT:
        """Open with explicit pool options."""
        return await (builder or Builder()).connect(connection_string, cls)

    @property
    def max_connections(self) -> int:
        return self._engine.pool.size()

    @property
    def checked_out(self) -> int:
        """Connections currently borrowed from the pool."""
        return self._engine.pool.checkedout()

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[AsyncConnection]:
        """Borrow one pooled connection for the duration of a query.

        Reads are never committed: the connection is rolled back on return.
        """
        async with self._borrow(self._engine.connect()) as conn:
            yield conn

    @asynccontextmanager
    async def _borrow(self, source) -> AsyncIterator[AsyncConnection]:
        try:
            async with source as conn:
                yield conn
        except DatabaseError:
            raise
        except _CONNECT_ERRORS as e:
            logger.error(f"DB error: {e}")
            raise DatabaseCorruptedError(str(e) or type(e).__name__) from e

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Run a query and return every row as a dict."""
        async with self.get_connection() as conn:
            result = await conn.execute(text(sql), params or {})
            return [dict(row) for row in result.mappings().all()]

    async def fetch_one(
        self, sql: str, params: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Run a query and return the first row as a dict (or None)."""
        async with self.get_connection() as conn:
            result = await conn.execute(text(sql), params or {})
            row = result.mappings().first()
            return dict(row) if row is not None else None

    async def scalar(self, sql: str, params: dict[str, Any] | None = None) -> Any:
        async with self.get_connection() as conn:
            result = await conn.execute(text(sql), params or {})
            return result.scalar()

    async def ping(self) -> bool:
        """Check database connectivity (for readiness probes)."""
        try:
            await self.scalar("SELECT 1")
            return True
        except DatabaseError as e:
            logger.error(f"DB health check failed: {e}")
            return False

    async def dispose(self) -> None:
        """Close every pooled connection and release the exclusive lock."""
        await self._engine.dispose()
        if self._exclusive_key is not None:
            _exclusive_urls.discard(self._exclusive_key)
            self._exclusive_key = None
        logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class ReadOnlyDatabase(_PooledDatabase):
    """Query-only handle: the capability handed to the public HTTP API."""


class Database(_PooledDatabase):
    """Full-access handle: queries plus mutations."""

    @property
    def engine(self) -> AsyncEngine:
        """The underlying engine; full capability only."""
        return self._engine

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int:
        """Run one statement in its own transaction. Returns the affected row count."""
        async with self.transaction() as conn:
            result = await conn.execute(text(sql), params or {})
            return result.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Borrow a connection inside BEGIN; commits on success, rolls back on error."""
        async with self._borrow(self._engine.begin()) as conn:
            yield conn
