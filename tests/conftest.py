"""Test fixtures and utilities."""

from pathlib import Path

import pytest
from fixtures import FakeRemote

from invoice_sync.config import SyncConfig
from invoice_sync.local_store import LocalStore
from invoice_sync.outbox import Outbox
from invoice_sync.services.scheduler import VirtualScheduler
from invoice_sync.services.sync_engine import SyncEngine


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_invoices.db"


@pytest.fixture
def store(temp_db) -> LocalStore:
    """Fresh local store."""
    return LocalStore(temp_db)


@pytest.fixture
def outbox(store) -> Outbox:
    return Outbox(store)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        interval_seconds=30.0,
        max_retry_attempts=3,
        online_debounce_seconds=5.0,
        mutation_sync_delay_seconds=1.0,
    )


@pytest.fixture
def engine(store, outbox, remote, scheduler, sync_config) -> SyncEngine:
    """Engine wired to the fake remote, offline and not started."""
    return SyncEngine(
        store=store,
        outbox=outbox,
        client=remote,
        scheduler=scheduler,
        config=sync_config,
    )
