"""
Pytest configuration and fixtures for SheetsBase tests.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from sheetsbase.core.cache import CacheLayer, MemoryCacheBackend
from sheetsbase.core.config import Settings
from sheetsbase.core.errors import StoreError
from sheetsbase.services.id_allocator import IdAllocator
from sheetsbase.services.query_engine import QueryEngine
from sheetsbase.services.table_service import TableService


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory stand-in for the Sheets transport.

    Tables are lists of rows; row ``i`` lives at sheet row ``i + 2`` like
    the real spreadsheet. Every call is recorded in ``calls``.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 headers: Optional[Dict[str, List[str]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.headers: Dict[str, List[str]] = dict(headers or {})
        for name, rows in self.tables.items():
            if name not in self.headers and rows:
                self.headers[name] = list(rows[0].keys())
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.fetch_delay = 0.0

    def _check(self, table: str, operation: str):
        if self.fail_with is not None:
            raise StoreError(str(self.fail_with), table=table, operation=operation)

    def _layout(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return {h: record.get(h) for h in self.headers.get(table, [])}

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_all", table))
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        self._check(table, "read")
        return [dict(row) for row in self.tables.get(table, [])]

    async def get_headers(self, table: str) -> List[str]:
        self.calls.append(("get_headers", table))
        self._check(table, "headers")
        return list(self.headers.get(table, []))

    async def append_record(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("append_record", table))
        self._check(table, "append")
        self.tables.setdefault(table, []).append(self._layout(table, record))
        return {"updates": {"updatedRows": 1}}

    async def update_record(self, table: str, row_number: int, record: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update_record", table, row_number))
        self._check(table, "update")
        self.tables[table][row_number - 2] = self._layout(table, record)
        return {"updatedRows": 1}

    async def clear_record(self, table: str, row_number: int) -> Dict[str, Any]:
        self.calls.append(("clear_record", table, row_number))
        self._check(table, "clear")
        self.tables[table][row_number - 2] = {h: None for h in self.headers.get(table, [])}
        return {"updatedRows": 1}

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


FLOWERS = [
    {"id": "1", "name": "Rosa", "type": "roses", "price": "10", "country": "Colombia"},
    {"id": "2", "name": "Tulip", "type": "tulips", "price": "20", "country": "Holland"},
    {"id": "3", "name": "ROSA Blanca", "type": "roses", "price": "5", "country": "Ecuador"},
    {"id": "4", "name": "Orchid", "type": "orchids", "price": None, "country": "Colombia"},
]

FLOWER_HEADERS = ["id", "name", "type", "price", "country", "created_at", "updated_at"]


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(_env_file=None, cache_enabled=True, cache_ttl=300, log_format="console")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(settings: Settings, clock: FakeClock) -> CacheLayer:
    return CacheLayer(settings, backend=MemoryCacheBackend(clock=clock))


@pytest.fixture
def engine() -> QueryEngine:
    return QueryEngine()


@pytest.fixture
def allocator() -> IdAllocator:
    return IdAllocator()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(
        tables={"flowers": FLOWERS, "orders": [{"id": "o1", "flower_id": "1", "qty": "3"}]},
        headers={"flowers": FLOWER_HEADERS, "orders": ["id", "flower_id", "qty", "created_at"]},
    )


@pytest.fixture
def table_service(settings: Settings, transport: FakeTransport, cache: CacheLayer,
                  engine: QueryEngine, allocator: IdAllocator) -> TableService:
    return TableService(settings, transport, cache, engine, allocator)
