"""Pytest configuration for clusterctl tests."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from clusterctl.config import Config
from clusterctl.exceptions import ConnectionError
from clusterctl.instance import MemoryCluster, Role
from clusterctl.state import InstanceState, StatusRow
from dqlitewire.constants import ValueType
from dqlitewire.messages import (
    DbResponse,
    RowsResponse,
    WelcomeResponse,
)


@pytest.fixture
def mock_reader() -> AsyncMock:
    """Create a mock StreamReader."""
    reader = AsyncMock()
    return reader


@pytest.fixture
def mock_writer() -> MagicMock:
    """Create a mock StreamWriter."""
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    writer.wait_closed = AsyncMock()
    return writer


@pytest.fixture
def welcome_response() -> bytes:
    return WelcomeResponse(heartbeat_timeout=15000).encode()


@pytest.fixture
def db_response() -> bytes:
    return DbResponse(db_id=1).encode()


@pytest.fixture
def rows_response() -> bytes:
    return RowsResponse(
        column_names=["role", "epoch"],
        column_types=[ValueType.TEXT, ValueType.INTEGER],
        rows=[["primary", 7]],
        has_more=False,
    ).encode()


class FakeConnection:
    """Stands in for InstanceConnection, answering queries from a table.

    ``responses`` maps a SQL prefix to either rows or an exception to raise.
    The first matching prefix wins. With ``hang`` set, every query blocks
    forever, like a server that accepted the connection and then stalled.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        *,
        fail: Exception | None = None,
        hang: bool = False,
    ):
        self.responses = responses or {}
        self.fail = fail
        self.hang = hang
        self.calls: list[tuple[str, list[Any] | None]] = []
        self.closed = False

    async def __aenter__(self) -> "FakeConnection":
        if self.fail is not None:
            raise self.fail
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.closed = True

    async def fetchall(self, sql: str, params: list[Any] | None = None) -> list[list[Any]]:
        self.calls.append((sql, params))
        if self.hang:
            await asyncio.Event().wait()
        for prefix, result in self.responses.items():
            if sql.startswith(prefix):
                if isinstance(result, Exception):
                    raise result
                return [list(row) for row in result]
        return []

    async def fetchone(self, sql: str, params: list[Any] | None = None) -> list[Any] | None:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, params: list[Any] | None = None) -> Any:
        row = await self.fetchone(sql, params)
        return row[0] if row else None

    async def ping(self) -> None:
        await self.fetchval("SELECT 1")


@pytest.fixture
def fake_connection() -> type[FakeConnection]:
    return FakeConnection


@pytest.fixture
def unreachable() -> Callable[[], FakeConnection]:
    def factory(*args: Any) -> FakeConnection:
        return FakeConnection(fail=ConnectionError("Connection refused"))

    return factory


@pytest.fixture
def config() -> Config:
    return Config(load_state_budget=0.05, wait_for_ready=1.0, timeout=5.0)


@pytest.fixture
def make_cluster() -> Callable[..., MemoryCluster]:
    def factory(n: int, primary: int | None = 0, name: str = "db") -> MemoryCluster:
        return MemoryCluster(
            name,
            [f"{name}-{i}.{name}-internal:3306" for i in range(n)],
            roles=[Role.PRIMARY if i == primary else Role.STANDBY for i in range(n)],
        )

    return factory


NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def _status(*ages: float, database: str = "db") -> list[StatusRow]:
    """Status rows whose last update was ``age`` seconds before NOW."""
    return [
        StatusRow(
            database=f"{database}{i}",
            role="standby",
            epoch=1,
            remote="standby",
            last_update=NOW - timedelta(seconds=age),
        )
        for i, age in enumerate(ages)
    ]


def _snapshot_for(
    cluster: MemoryCluster,
    roles: list[str | Exception],
    epochs: list[int] | None = None,
    statuses: list[list[StatusRow]] | None = None,
    version: str = "1.6.0",
) -> list[InstanceState]:
    """Build a snapshot for ``cluster``; an Exception role marks the entry unreachable."""
    states = []
    for i, role in enumerate(roles):
        instance = cluster.instance(i)
        if isinstance(role, Exception):
            states.append(InstanceState(instance=instance, err=role))
            continue
        states.append(
            InstanceState(
                instance=instance,
                role=role,
                epoch=epochs[i] if epochs else 1,
                status=statuses[i] if statuses else [],
                version=version,
            )
        )
    return states


@pytest.fixture
def status_rows() -> Callable[..., list[StatusRow]]:
    return _status


@pytest.fixture
def build_snapshot() -> Callable[..., list[InstanceState]]:
    return _snapshot_for
