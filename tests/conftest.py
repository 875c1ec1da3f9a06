"""Shared fakes for provider tests; no MySQL server is needed."""

from __future__ import annotations

import threading
import time
from typing import Any

import pymysql
import pytest

from mysqlprovider.sql.modules.base import ProviderConfig
from mysqlprovider.sql.modules.connection import SERVER_VERSION_QUERY, Backoff, Database
from mysqlprovider.sql.modules.provider import Provider, configure

FAST_BACKOFF = Backoff(initial=0.01, minimum=0.01, maximum=0.02)


class FakeDatabase(Database):
    """Records statements and answers queries from canned responses.

    ``responses`` maps a SQL fragment to the rows (or exception) returned by
    any query containing it.
    """

    def __init__(self, version: Any = "8.0.21", responses: dict[str, list] | None = None) -> None:
        super().__init__(None)
        self.raw_version = version
        self.responses = responses or {}
        self.statements: list[tuple[str, Any]] = []
        self.queries: list[tuple[str, Any]] = []
        self.version_queries = 0
        self.pings = 0
        self.pool_limits: tuple[float, int] | None = None
        self.closed = False
        self._lock = threading.Lock()

    def ping(self) -> None:
        self.pings += 1

    def query(self, sql: str, params=None) -> list:
        with self._lock:
            self.queries.append((sql, params))
        for fragment, rows in self.responses.items():
            if fragment in sql:
                if isinstance(rows, Exception):
                    raise rows
                return rows
        return []

    def query_scalar(self, sql: str, params=None) -> Any:
        if sql == SERVER_VERSION_QUERY:
            self.version_queries += 1
            return self.raw_version
        rows = self.query(sql, params)
        return rows[0][0] if rows else None

    def execute(self, sql: str, params=None) -> int:
        with self._lock:
            self.statements.append((sql, params))
        return 0

    def set_pool_limits(self, max_lifetime: float, max_open: int) -> None:
        self.pool_limits = (max_lifetime, max_open)

    def close(self) -> None:
        self.closed = True

    @property
    def executed(self) -> list[str]:
        return [sql for sql, _ in self.statements]


class FakeDriver:
    """Hands out one FakeDatabase, failing the first ``failures`` opens (all when negative)."""

    def __init__(self, database: FakeDatabase | None = None, failures: int = 0, delay: float = 0) -> None:
        self.database = database or FakeDatabase()
        self.failures = failures
        self.delay = delay
        self.opens = 0
        self.open_threads: set[int] = set()
        self.dsns: list = []
        self.dialers: list = []
        self._lock = threading.Lock()

    def open(self, dsn, dialer) -> FakeDatabase:
        with self._lock:
            self.opens += 1
            attempt = self.opens
            self.open_threads.add(threading.get_ident())
            self.dsns.append(dsn)
            self.dialers.append(dialer)
        if self.delay:
            time.sleep(self.delay)
        if self.failures < 0 or attempt <= self.failures:
            raise pymysql.err.OperationalError(2003, "Can't connect to MySQL server")
        return self.database


class FakeExchanger:
    def __init__(self, token: str = "aad-token") -> None:
        self.token = token
        self.calls: list[tuple[str, str, str, str]] = []

    def exchange(self, client_id: str, client_secret: str, tenant_id: str, audience: str) -> str:
        self.calls.append((client_id, client_secret, tenant_id, audience))
        return self.token


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ALL_PROXY",
        "all_proxy",
        "NO_PROXY",
        "no_proxy",
        "MYSQL_ENDPOINT",
        "MYSQL_USERNAME",
        "MYSQL_PASSWORD",
        "MYSQL_TLS_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def make_provider():
    def _make(database: FakeDatabase | None = None, **config: Any) -> Provider:
        settings = {"endpoint": "db.example.com:3306", "username": "root", "password": "pw"}
        settings.update(config)
        return configure(
            ProviderConfig(**settings),
            driver=FakeDriver(database or FakeDatabase()),
            backoff=FAST_BACKOFF,
            environ={},
        )

    return _make
