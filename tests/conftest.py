"""Shared fixtures for tallycache tests."""

import asyncio
import logging
from datetime import date
from typing import List, Optional

import pytest

from tallycache.cache.backends import DirectoryBackend
from tallycache.cache.records import RecordStore
from tallycache.cache.store import HybridCache
from tallycache.errors import ServerError
from tallycache.models.sync import CompanyIdentity
from tallycache.sync.fetcher import ExtractResult
from tallycache.sync.orchestrator import SyncOrchestrator


class FakeClient:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakeFetcher:
    """Stands in for ``SalesFetcher``; serves two vouchers per window.

    Window ``i`` returns vouchers with alter ids ``10*i + 1`` and ``10*i + 2``.
    """

    def __init__(self, per_window: int = 2, books_from: Optional[date] = None):
        self.client = FakeClient()
        self.per_window = per_window
        self.books_from = books_from
        self.calls: List[int] = []
        self.since: List[Optional[int]] = []
        self.update_calls: List[int] = []
        self.updates = ExtractResult()
        self.fail_at: Optional[int] = None
        self.error = ServerError("HTTP 500: boom", 500)
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.customers = [{"name": "Cash"}, {"name": "Retail Customer"}]
        self.items = [{"name": "Widget"}]

    def vouchers_for(self, index: int, start: date):
        return [
            {"mstid": f"{index}-{n}", "alterid": index * 10 + n + 1, "date": start.isoformat()}
            for n in range(self.per_window)
        ]

    async def fetch_window(self, identity, window, last_alter_id=None):
        self.calls.append(window.index)
        self.since.append(last_alter_id)
        if self.gate is not None:
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()
        if self.fail_at == window.index:
            raise self.error
        return self.vouchers_for(window.index, window.start)

    async def fetch_updates(self, identity, from_date, to_date, last_alter_id):
        self.update_calls.append(last_alter_id)
        return self.updates

    async def fetch_customers(self, identity):
        return list(self.customers)

    async def fetch_items(self, identity):
        return list(self.items)

    async def fetch_books_from(self, identity):
        return self.books_from


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo ``configure_logging`` so CLI tests don't leak handlers."""
    yield
    logger = logging.getLogger("tallycache")
    for handler in list(logger.handlers):
        if getattr(handler, "_tallycache", False):
            logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def identity():
    return CompanyIdentity(location_id="7", guid="guid-a", company_name="Acme Traders")


@pytest.fixture
def other_identity():
    return CompanyIdentity(location_id="7", guid="guid-b", company_name="Beta Stores")


@pytest.fixture
async def cache(tmp_path):
    records = RecordStore(str(tmp_path / "records.duckdb"))
    store = HybridCache(DirectoryBackend(str(tmp_path / "cache")), records, read_retry_delay=0)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def orchestrator(cache, fake_fetcher):
    """Range 2024-01-01..2024-01-05 in two-day chunks: three windows."""
    return SyncOrchestrator(
        cache,
        fake_fetcher,
        chunk_days=2,
        default_books_from=date(2024, 1, 1),
        today=lambda: date(2024, 1, 5),
    )
