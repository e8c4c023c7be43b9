"""Shared pytest fixtures.

Provides:
- a file-based SQLite database per test (``db``)
- a scripted in-memory SMM panel (``FakeSmmAPI``)
- the two-service configuration used by the order flow tests
"""

import itertools
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

import storage
from config import ServiceConfig
from errors import ExternalApiError


@pytest.fixture
async def db(tmp_path, monkeypatch):
    """Point storage at a fresh temp database and create the schema."""
    path = str(tmp_path / "bot.db")
    monkeypatch.setattr(storage, "DB_PATH", path)
    await storage.init_db()
    return path


@pytest.fixture
def services() -> List[ServiceConfig]:
    return [
        ServiceConfig(key="viewers", service_id="24044", quantity=1000, max_price=10000),
        ServiceConfig(key="upvotes", service_id="24047", quantity=100, max_price=150000),
    ]


DEFAULT_CATALOG = [
    {"id": 24044, "name": "Quora Views", "price": 9000},
    {"id": 24047, "name": "Quora Upvotes", "price": 120000},
    {"id": 1, "name": "Unrelated", "price": 5},
]


class FakeSmmAPI:
    """In-memory panel; failures are scripted per (service_id, link) pair."""

    def __init__(
        self,
        catalog: Optional[List[Dict]] = None,
        fail_pairs: Iterable[Tuple[str, str]] = (),
        statuses: Optional[Dict[str, Dict]] = None,
    ):
        self.catalog = list(DEFAULT_CATALOG if catalog is None else catalog)
        self.fail_pairs = set(fail_pairs)
        self.statuses = dict(statuses or {})
        self.catalog_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.placed: List[Tuple[str, str, int]] = []
        self.status_calls: List[str] = []
        self._ids = itertools.count(1000)

    async def get_services(self) -> List[Dict]:
        if self.catalog_error:
            raise self.catalog_error
        return list(self.catalog)

    async def place_order(self, service_id: str, link: str, quantity: int) -> str:
        self.placed.append((service_id, link, quantity))
        if (service_id, link) in self.fail_pairs:
            raise ExternalApiError("order", "Service is under maintenance")
        return str(next(self._ids))

    async def get_status(self, order_id: str) -> Dict:
        self.status_calls.append(order_id)
        if self.status_error:
            raise self.status_error
        return dict(self.statuses.get(order_id, {"status": "Pending", "start_count": "0", "remains": "0"}))


@pytest.fixture
def fake_api() -> FakeSmmAPI:
    return FakeSmmAPI()


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
