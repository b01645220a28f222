# tests/conftest.py
from datetime import datetime, timedelta

import pytest
from typer.testing import CliRunner

from sluice_core.cache import MemoryCache
from sluice_core.config import Connection, Dataset, Settings
from sluice_core.connectors.memory import MemoryDestination, MemorySource
from sluice_core.service import SyncService
from sluice_core.store import MemoryStore


@pytest.fixture
def cli_runner():
    """Provide a reusable CLI test runner for Sluice Core."""
    return CliRunner()


@pytest.fixture
def settings():
    return Settings(
        read_batch_size=100,
        insert_batch_size=50,
        report_interval=1000,
        heartbeat_interval=0.05,
        poll_interval=0.05,
        scheduler_interval=0.05,
    )


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_connection(
        Connection(id=1, name="shop-db", type="postgres", host="db.internal", database="shop",
                   username="etl", password="secret")
    )
    return store


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def destination():
    return MemoryDestination()


@pytest.fixture
def make_rows():
    """Rows shaped like an orders table: id, customer, amount, status, updated_at."""
    def _make(count, start=1, base=datetime(2024, 3, 1, 8, 0, 0)):
        return [
            {
                "id": i,
                "customer": f"customer_{i % 17}",
                "amount": i + 0.25,
                "status": "active" if i % 5 else "archived",
                "updated_at": base + timedelta(minutes=i),
            }
            for i in range(start, start + count)
        ]
    return _make


@pytest.fixture
def add_dataset(store):
    def _add(**fields):
        values = {
            "id": 10,
            "connection_id": 1,
            "name": "orders",
            "source_table": "public.orders",
            "target_table": "orders",
            "unique_column": "id",
        }
        values.update(fields)
        return store.add_dataset(Dataset(**values))
    return _add


@pytest.fixture
def make_service(store, cache, settings, destination):
    """Service wired to in-memory connectors; pass the MemorySource the jobs should read."""
    def _make(source=None, target=None):
        source = source or MemorySource()
        target = target or destination
        return SyncService(
            store,
            cache,
            settings,
            worker_id="test-worker",
            source_factory=lambda connection: source,
            destination_factory=lambda: target,
        )
    return _make
