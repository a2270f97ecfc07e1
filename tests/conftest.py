"""Fake driver shared by the proxy tests."""

from __future__ import annotations

from typing import Any, Sequence

import pytest

from pgbalance.config import NodeConfig, ProfileConfig, ProxyConfig
from pgbalance.connections import DatabaseConnectionError, DriverError, quote_literal
from pgbalance.models import FetchMode, NodeDescriptor


class FakeConnection:
    def __init__(self, driver: FakeDriver, descriptor: NodeDescriptor) -> None:
        self._driver = driver
        self.descriptor = descriptor
        self.host = descriptor.host
        self.database = descriptor.database
        self.user = descriptor.user
        self.fetch_mode = FetchMode.NUM
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False
        self.in_transaction = False
        self.failed = False

    def get_all(self, query: str, params: Sequence[Any] | None = None) -> list[Any]:
        self._run("get_all", query, params)
        return [dict(row) for row in self._driver.rows]

    def get_col(self, query: str, params: Sequence[Any] | None = None) -> list[Any]:
        self._run("get_col", query, params)
        return [next(iter(row.values())) for row in self._driver.rows]

    def get_row(self, query: str, params: Sequence[Any] | None = None) -> Any:
        self._run("get_row", query, params)
        return dict(self._driver.rows[0]) if self._driver.rows else None

    def get_one(self, query: str, params: Sequence[Any] | None = None) -> Any:
        self._run("get_one", query, params)
        return self._driver.scalar

    def execute(self, query: str, params: Sequence[Any] | None = None) -> str:
        self._run("execute", query, params)
        return f"UPDATE {self._driver.affected}"

    def start_trans(self) -> bool:
        self.calls.append(("start_trans",))
        self.in_transaction = True
        return True

    def complete_trans(self, auto_complete: bool = True) -> bool:
        self.calls.append(("complete_trans", auto_complete))
        self.in_transaction = False
        return auto_complete and not self.failed

    def fail_trans(self) -> None:
        self.calls.append(("fail_trans",))
        self.failed = True

    def has_failed_trans(self) -> bool:
        return self.in_transaction and self.failed

    def insert_id(self) -> Any:
        self.calls.append(("insert_id",))
        return self._driver.last_id

    def affected_rows(self) -> int:
        return self._driver.affected

    def error_no(self) -> str:
        return ""

    def error_msg(self) -> str:
        return ""

    def escape(self, value: str) -> str:
        return quote_literal(value)

    def close(self) -> None:
        self.closed = True

    def _run(self, name: str, query: str, params: Sequence[Any] | None) -> None:
        self.calls.append((name, query, params))
        if any(token in query for token in self._driver.failing):
            raise DriverError(f'relation "{self._driver.failing[0]}" does not exist', sqlstate="42P01")


class FakeDriver:
    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = [{"id": 1, "email": "alice@example.com"}, {"id": 2, "email": "bob@example.com"}]
        self.scalar: Any = 42
        self.affected = 3
        self.last_id = 7
        self.failing: list[str] = []
        self.down_hosts: set[str] = set()
        self.connections: list[FakeConnection] = []

    def connect(self, descriptor: NodeDescriptor) -> FakeConnection:
        if descriptor.host in self.down_hosts:
            raise DatabaseConnectionError(f"could not connect to {descriptor.host}")
        connection = FakeConnection(self, descriptor)
        self.connections.append(connection)
        return connection

    def hosts(self) -> list[str]:
        return [connection.host for connection in self.connections]


class FirstNodeSelector:
    def __init__(self) -> None:
        self.calls = 0

    def select(self, nodes):  # type: ignore[no-untyped-def]
        self.calls += 1
        return nodes[0].node_id


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def selector() -> FirstNodeSelector:
    return FirstNodeSelector()


@pytest.fixture
def single_config(tmp_path) -> ProxyConfig:  # type: ignore[no-untyped-def]
    return ProxyConfig(
        database=NodeConfig(host="db-single", database="app", user="app"),
        error_log_path=tmp_path / "logs" / "errors_database.log",
    )


@pytest.fixture
def balanced_config(tmp_path) -> ProxyConfig:  # type: ignore[no-untyped-def]
    return ProxyConfig(
        profile="main",
        profiles={
            "main": ProfileConfig(
                master=NodeConfig(host="db-master", database="app", user="writer"),
                slaves={
                    "replica1": NodeConfig(host="db-replica-1", database="app", user="reader", weight=2),
                    "replica2": NodeConfig(host="db-replica-2", database="app", user="reader"),
                },
            )
        },
        error_log_path=tmp_path / "logs" / "errors_database.log",
    )
