"""Connection Pool: builder defaults, open/create semantics, capability split, borrow/return.

Invariants:
    - Builder defaults to 20 connections and connects to nothing on construction
    - create()/open() fail with DatabaseCorruptedError when the store is unreachable
    - A read-only handle exposes no mutating operation
    - Borrowed connections go back to the pool on success, error and cancellation
    - An exclusive pool cannot be opened twice against the same connection string
"""

import asyncio

import pytest
from sqlalchemy import text

from timeseries_api.core.errors import (
    DatabaseAlreadyOpenError,
    DatabaseCorruptedError,
)
from timeseries_api.infrastructure.database import (
    Builder,
    Database,
    DEFAULT_MAX_CONNECTIONS,
    ReadOnlyDatabase,
    normalize_url,
)


# ─── Builder ─────────────────────────────────────────────────────

def test_builder_defaults_to_twenty_connections():
    builder = Builder()
    assert builder.max_connections == DEFAULT_MAX_CONNECTIONS == 20
    assert builder.exclusive is False


def test_builder_setters_return_copies():
    base = Builder()
    sized = base.with_max_connections(5).with_acquire_timeout(2.5)
    assert (sized.max_connections, sized.acquire_timeout) == (5, 2.5)
    assert base.max_connections == 20


def test_builder_rejects_empty_pool():
    with pytest.raises(ValueError):
        Builder().with_max_connections(0)


def test_database_builder_is_fresh_builder():
    assert Database.builder() == Builder()
    assert ReadOnlyDatabase.builder() == Builder()


async def test_pool_is_sized_by_builder(sqlite_url):
    db = await Builder().with_max_connections(3).create(sqlite_url)
    try:
        assert db.max_connections == 3
    finally:
        await db.dispose()


# ─── Connection strings ──────────────────────────────────────────

def test_bare_postgres_scheme_gets_asyncpg_driver():
    url = normalize_url("postgresql://localhost:5432/postgres")
    assert url.drivername == "postgresql+asyncpg"
    assert normalize_url("postgres://u@db/fx").drivername == "postgresql+asyncpg"


def test_explicit_driver_is_kept(sqlite_url):
    assert normalize_url(sqlite_url).drivername == "sqlite+aiosqlite"


def test_sslmode_is_renamed_for_asyncpg():
    url = normalize_url("postgresql://u:p@db:5432/fx?sslmode=require")
    assert "sslmode" not in url.query
    assert url.query["ssl"] == "require"


def test_malformed_connection_string_is_corrupted_error():
    with pytest.raises(DatabaseCorruptedError):
        normalize_url("definitely not a url")


# ─── Open / create ───────────────────────────────────────────────

async def test_create_returns_full_capability(sqlite_url):
    db = await Database.create(sqlite_url)
    try:
        assert isinstance(db, Database)
        assert await db.ping() is True
    finally:
        await db.dispose()


async def test_builder_open_returns_read_only(sqlite_url):
    db = await Builder().open(sqlite_url)
    try:
        assert isinstance(db, ReadOnlyDatabase)
    finally:
        await db.dispose()


async def test_read_only_open_with_builder(sqlite_url):
    db = await ReadOnlyDatabase.open(sqlite_url, Builder().with_max_connections(2))
    try:
        assert isinstance(db, ReadOnlyDatabase)
        assert db.max_connections == 2
    finally:
        await db.dispose()


async def test_unreachable_store_fails_create(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'fx.db'}"
    with pytest.raises(DatabaseCorruptedError) as exc:
        await Database.create(url)
    assert exc.value.code == "DATABASE_CORRUPTED"
    assert exc.value.detail


async def test_unknown_driver_fails_create():
    with pytest.raises(DatabaseCorruptedError):
        await Database.create("nosuchdb+nodriver://localhost/fx")


async def test_exclusive_pool_cannot_open_twice(sqlite_url):
    builder = Builder().with_exclusive()
    first = await builder.create(sqlite_url)
    try:
        with pytest.raises(DatabaseAlreadyOpenError):
            await builder.open(sqlite_url)
    finally:
        await first.dispose()

    # Lock released on dispose
    again = await builder.open(sqlite_url)
    await again.dispose()


async def test_concurrent_exclusive_opens_admit_one(sqlite_url):
    builder = Builder().with_exclusive()
    results = await asyncio.gather(
        builder.open(sqlite_url), builder.open(sqlite_url), return_exceptions=True,
    )
    opened = [r for r in results if isinstance(r, ReadOnlyDatabase)]
    refused = [r for r in results if isinstance(r, DatabaseAlreadyOpenError)]
    try:
        assert (len(opened), len(refused)) == (1, 1)
    finally:
        for db in opened:
            await db.dispose()


async def test_failed_exclusive_open_releases_claim(tmp_path):
    missing = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'fx.db'}"
    builder = Builder().with_exclusive()
    with pytest.raises(DatabaseCorruptedError):
        await builder.open(missing)
    (tmp_path / "missing").mkdir()
    db = await builder.open(missing)
    await db.dispose()


async def test_shared_pools_may_coexist(sqlite_url):
    first = await Database.create(sqlite_url)
    second = await ReadOnlyDatabase.create(sqlite_url)
    await second.dispose()
    await first.dispose()


# ─── Capability split ────────────────────────────────────────────

def test_read_only_has_no_mutating_operations():
    assert not hasattr(ReadOnlyDatabase, "execute")
    assert not hasattr(ReadOnlyDatabase, "transaction")
    assert hasattr(Database, "execute")
    assert hasattr(Database, "transaction")


def test_raw_engine_only_on_full_capability():
    assert not hasattr(ReadOnlyDatabase, "engine")
    assert hasattr(Database, "engine")


async def test_read_only_handle_queries(readonly_db):
    rows = await readonly_db.fetch_all(
        "SELECT id, symbol FROM currency_pairs ORDER BY id",
    )
    assert rows == [{"id": 1, "symbol": "USDVND"}, {"id": 2, "symbol": "EURVND"}]


async def test_fetch_one_and_scalar(readonly_db):
    row = await readonly_db.fetch_one(
        "SELECT symbol FROM currency_pairs WHERE id = :id", {"id": 2},
    )
    assert row == {"symbol": "EURVND"}
    assert await readonly_db.fetch_one(
        "SELECT symbol FROM currency_pairs WHERE id = :id", {"id": 99},
    ) is None
    assert await readonly_db.scalar("SELECT count(*) FROM currency_pairs") == 2


async def test_execute_reports_row_count(full_db):
    changed = await full_db.execute(
        "UPDATE currency_pairs SET symbol = :s WHERE id = 1", {"s": "USDJPY"},
    )
    assert changed == 1
    assert await full_db.scalar(
        "SELECT symbol FROM currency_pairs WHERE id = 1",
    ) == "USDJPY"


async def test_failed_transaction_rolls_back(full_db):
    with pytest.raises(DatabaseCorruptedError):
        async with full_db.transaction() as conn:
            await conn.execute(text("DELETE FROM currency_pairs"))
            await conn.execute(text("SELECT * FROM no_such_table"))
    assert await full_db.scalar("SELECT count(*) FROM currency_pairs") == 2


# ─── Borrow / return ─────────────────────────────────────────────

async def test_query_error_maps_to_corrupted(readonly_db):
    with pytest.raises(DatabaseCorruptedError) as exc:
        await readonly_db.fetch_all("SELECT * FROM no_such_table")
    assert "no_such_table" in exc.value.detail


async def test_connection_returned_after_error(readonly_db):
    with pytest.raises(DatabaseCorruptedError):
        async with readonly_db.get_connection() as conn:
            await conn.execute(text("SELECT * FROM no_such_table"))
    assert readonly_db.checked_out == 0


async def test_connection_returned_after_success(readonly_db):
    async with readonly_db.get_connection() as conn:
        await conn.execute(text("SELECT 1"))
        assert readonly_db.checked_out == 1
    assert readonly_db.checked_out == 0


async def test_connection_returned_after_cancellation(readonly_db):
    borrowed = asyncio.Event()

    async def hold():
        async with readonly_db.get_connection():
            borrowed.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(hold())
    await borrowed.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert readonly_db.checked_out == 0


async def test_exhausted_pool_times_out(sqlite_url, full_db):
    db = await ReadOnlyDatabase.open(
        sqlite_url, Builder().with_max_connections(1).with_acquire_timeout(0.1),
    )
    try:
        async with db.get_connection():
            with pytest.raises(DatabaseCorruptedError):
                await db.fetch_all("SELECT 1")
        # The request that timed out failed alone; the pool still serves
        assert await db.scalar("SELECT 1") == 1
    finally:
        await db.dispose()


async def test_ping_false_when_query_fails(readonly_db, monkeypatch):
    async def failing_scalar(sql, params=None):
        raise DatabaseCorruptedError("server closed the connection")

    monkeypatch.setattr(readonly_db, "scalar", failing_scalar)
    assert await readonly_db.ping() is False
