"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tourdash.cache.config import CacheConfig
from tourdash.database.models import Base
from tourdash.integrations.base import Filter, RemoteDataSource, RemoteFetchError


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDataSource(RemoteDataSource):
    """
    In-memory RemoteDataSource.

    Rows are stored per table and matched with ``Filter.matches``. A table
    can be made to fail, and optionally gated so a test controls when a
    query returns.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [copy.deepcopy(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.closed = False
        self._next_id = 1

    def fail(self, table: str, error: Optional[Exception] = None) -> None:
        self.failures[table] = error or RemoteFetchError(f"{table} unavailable", table=table, status_code=503)

    def recover(self, table: str) -> None:
        self.failures.pop(table, None)

    def gate(self, table: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[table] = event
        return event

    def count(self, table: str, op: str = "query") -> int:
        return sum(1 for call in self.calls if call[0] == op and call[1] == table)

    async def _wait(self, table: str) -> None:
        gate = self.gates.get(table)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(table)
        if error is not None:
            raise error

    async def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        await self._wait(table)

    async def query(
        self,
        table: str,
        filters: Optional[Sequence[Filter]] = None,
        select: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[Dict[str, Any]]:
        # Rows are read before the gate, like a slow response to an earlier read
        self.calls.append(("query", table))
        rows = copy.deepcopy([
            row for row in self.tables.get(table, [])
            if all(f.matches(row) for f in filters or [])
        ])
        await self._wait(table)
        return rows

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self._enter("insert", table)
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", f"{table}-{self._next_id}")
            self._next_id += 1
            self.tables.setdefault(table, []).append(row)
            stored.append(copy.deepcopy(row))
        return stored

    async def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        await self._enter("update", table)
        updated = []
        for row in self.tables.get(table, []):
            if all(f.matches(row) for f in filters):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        await self._enter("delete", table)
        kept, removed = [], 0
        for row in self.tables.get(table, []):
            if all(f.matches(row) for f in filters):
                removed += 1
            else:
                kept.append(row)
        self.tables[table] = kept
        return removed

    async def close(self) -> None:
        self.closed = True


# ============================================================================
# Mock Data Fixtures
# ============================================================================

def creator_tree(user_id: str = "user-1") -> Dict[str, Any]:
    """Creator row with nested clients, projects and their relations."""
    return {
        "id": "creator-1",
        "user_id": user_id,
        "agency_name": "Tours & Co",
        "end_clients": [
            {
                "id": "client-1",
                "creator_id": "creator-1",
                "name": "Hotel Lago",
                "projects": [
                    {
                        "id": "project-1",
                        "end_client_id": "client-1",
                        "title": "Lobby tour",
                        "status": "active",
                        "chatbots": [{"id": "bot-1", "project_id": "project-1", "name": "Concierge"}],
                        "analytics": [
                            {"id": "a-1", "project_id": "project-1", "metric_type": "view", "metric_value": 40},
                            {"id": "a-2", "project_id": "project-1", "metric_type": "view", "metric_value": 10},
                        ],
                        "requests": [{"id": "req-1", "project_id": "project-1", "status": "open"}],
                    },
                    {
                        "id": "project-2",
                        "end_client_id": "client-1",
                        "title": "Spa tour",
                        "status": "draft",
                        "chatbots": [],
                        "analytics": None,
                        "requests": [],
                    },
                ],
            },
            {
                "id": "client-2",
                "creator_id": "creator-1",
                "name": "Museo Civico",
                "projects": [],
            },
        ],
    }


def dashboard_tables(user_id: str = "user-1") -> Dict[str, List[Dict[str, Any]]]:
    return {
        "creators": [creator_tree(user_id)],
        "support_requests": [{"id": "sr-1", "creator_id": "creator-1", "subject": "Billing"}],
        "chatbot_requests": [{"id": "cr-1", "project_id": "project-1", "status": "pending"}],
        "leads": [
            {"id": "lead-1", "chatbot_id": "bot-1", "email": "a@example.com"},
            {"id": "lead-2", "chatbot_id": "bot-1", "email": "b@example.com"},
        ],
        "assets": [{"id": "asset-1", "creator_id": "creator-1", "kind": "logo"}],
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_config() -> CacheConfig:
    """Config independent of the environment."""
    return CacheConfig(
        namespace="test",
        enabled=True,
        default_ttl_seconds=300,
        coalesce_requests=False,
        preferences_enabled=True,
        debounce_seconds=0.05,
        redis_url=None,
    )


@pytest.fixture
def source() -> FakeDataSource:
    return FakeDataSource(dashboard_tables())


@pytest.fixture
def session_factory():
    """Session factory on a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def make_source():
    """Factory for FakeDataSource with custom tables."""
    return FakeDataSource


@pytest.fixture
def creator_row() -> Dict[str, Any]:
    return creator_tree()
