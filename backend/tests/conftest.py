"""Root conftest: shared fixtures for pool, server and client tests.

Invariants:
    - Pool tests run against a fresh SQLite file per test (aiosqlite driver)
    - Server tests use in-memory fakes of ReadableDatabase; no network
    - Every pool opened by a fixture is disposed after the test

Design Decisions:
    - SQLite file over :memory:: each pooled connection must see the same database
    - FakeDatabase implements the read capability only, the same contract handlers get
"""

import os
from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from timeseries_api.api.server import ApiServer
from timeseries_api.config import HttpConfig
from timeseries_api.core.errors import DatabaseCorruptedError
from timeseries_api.infrastructure.database import Database, ReadOnlyDatabase

# Ensure tests never reach a real database by accident
os.environ.setdefault("DB_PATH", "sqlite+aiosqlite:///unused-test.db")


class FakeDatabase:
    """ReadableDatabase double: canned rows, configurable health."""

    def __init__(self, rows=None, healthy=True):
        self.rows = list(rows or [])
        self.healthy = healthy
        self.queries = []

    @asynccontextmanager
    async def get_connection(self):
        if not self.healthy:
            raise DatabaseCorruptedError("connection refused")
        yield None

    async def fetch_all(self, sql, params=None):
        self.queries.append((sql, params))
        if not self.healthy:
            raise DatabaseCorruptedError("connection refused")
        return list(self.rows)

    async def fetch_one(self, sql, params=None):
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def scalar(self, sql, params=None):
        row = await self.fetch_one(sql, params)
        return next(iter(row.values())) if row else None

    async def ping(self):
        return self.healthy


@pytest.fixture
def fake_db():
    return FakeDatabase(rows=[{"symbol": "USDVND", "mid": 25410.5}])


@pytest.fixture
def broken_db():
    return FakeDatabase(healthy=False)


@pytest.fixture
def http_config():
    return HttpConfig(address="127.0.0.1:0", path="/api", version="1.0")


@pytest.fixture
def make_server(http_config, fake_db):
    """Factory: ApiServer with the default config and fake pool unless overridden."""

    def _make(config=None, db=None, **kwargs):
        return ApiServer(config or http_config, db or fake_db, **kwargs)

    return _make


@pytest.fixture
def client_for():
    """Factory: httpx client bound in-process to a server's ASGI app."""

    @asynccontextmanager
    async def _client(server):
        async with AsyncClient(
            transport=ASGITransport(app=server.build_app()), base_url="http://test",
        ) as c:
            yield c

    return _client


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'timeseries.db'}"


@pytest.fixture
async def full_db(sqlite_url):
    db = await Database.create(sqlite_url)
    await db.execute(
        "CREATE TABLE currency_pairs (id INTEGER PRIMARY KEY, symbol TEXT NOT NULL)",
    )
    await db.execute(
        "INSERT INTO currency_pairs (id, symbol) VALUES (1, 'USDVND'), (2, 'EURVND')",
    )
    yield db
    await db.dispose()


@pytest.fixture
async def readonly_db(full_db, sqlite_url):
    db = await ReadOnlyDatabase.create(sqlite_url)
    yield db
    await db.dispose()
