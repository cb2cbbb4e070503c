"""Timeseries API: process entry point.

Invariants:
    - Logging is configured before anything else runs, exactly once
    - The pool is opened read-only before the listener exists; if it cannot be
      opened the process exits with status 1 and never binds
    - The pool is disposed after the server has drained

Design Decisions:
    - Handlers are registered here, not discovered: the framework ships only
      the health probes, deployments add their query routes through register_routes
"""

import asyncio
import logging
from typing import Callable

from timeseries_api.api.server import ApiServer
from timeseries_api.config import Settings, get_settings
from timeseries_api.core.errors import DatabaseError
from timeseries_api.infrastructure.database import Builder, ReadOnlyDatabase
from timeseries_api.infrastructure.observability import setup_logging

logger = logging.getLogger(__name__)


async def open_database(settings: Settings) -> ReadOnlyDatabase:
    """Open the read-only pool or exit the process."""
    builder = (
        Builder()
        .with_max_connections(settings.db_max_connections)
        .with_acquire_timeout(settings.db_acquire_timeout_seconds)
    )
    try:
        db = await ReadOnlyDatabase.open(settings.db_path, builder)
    except DatabaseError as e:
        logger.critical(f"Cannot open DB: {e}", extra={"error_code": e.code})
        raise SystemExit(1) from e
    logger.info("Database opened successfully")
    return db


def build_server(settings: Settings, db: ReadOnlyDatabase) -> ApiServer:
    return ApiServer(
        settings.http_config(),
        db,
        request_timeout=settings.request_timeout_seconds,
        shutdown_timeout=settings.shutdown_timeout_seconds,
        max_concurrent_requests=settings.max_concurrent_requests,
    )


async def main(
    settings: Settings | None = None,
    register_routes: Callable[[ApiServer], None] | None = None,
) -> None:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    db = await open_database(settings)
    server = build_server(settings, db)
    if register_routes is not None:
        register_routes(server)
    try:
        await server.init()
    finally:
        await db.dispose()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())
