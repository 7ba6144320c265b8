"""Shared fixtures: a deterministic clock and an in-memory store."""

import itertools
import threading
from datetime import datetime, timedelta, timezone

import pytest

from resource_vault.adapters.storage.duckdb_backend import DuckDBBackend
from resource_vault.domain.ports import ClockPort
from resource_vault.domain.services.resource_store import ResourceStore, StoreConfig

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock(ClockPort):
    """Clock that advances one second per call and hands out sequential ids."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(seconds=1)):
        self._current = start
        self._step = step
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            self._current += self._step
            return self._current

    def new_id(self) -> str:
        with self._lock:
            return f"id-{next(self._ids):04d}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    """In-memory DuckDB backend with the schema created."""
    duckdb_backend = DuckDBBackend(db_path=":memory:")
    assert duckdb_backend.initialize_schema().is_success()
    yield duckdb_backend
    duckdb_backend.close()


@pytest.fixture
def store_config():
    return StoreConfig()


@pytest.fixture
def store(backend, clock, store_config):
    return ResourceStore(backend, clock=clock, config=store_config)
