"""
Shared fixtures for the VT sync tests.

Unit tests run against MemoryStore / MemoryLegacySource with a fake clock.
Tests marked integration need a PostgreSQL database at DB_URL.
"""
from datetime import datetime, timedelta, timezone

import pytest

from tally_vt_sync.config import VtSyncConfig
from tally_vt_sync.sources import MemoryLegacySource
from tally_vt_sync.store import MemoryStore
from tally_vt_sync.sync import SyncEngine
from tally_vt_sync.tenant import Tenant

T0 = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def voucher_row(guid, amount, company="C1", division="D1", **extra):
    """A tally_trn_voucher export row."""
    row = {
        "guid": guid,
        "company_id": company,
        "division_id": division,
        "voucher_number": f"S/{guid}",
        "voucher_type": "Sales",
        "date": "20240401",
        "party_ledger_name": "Acme Traders",
        "amount": amount,
        "is_cancelled": "No",
    }
    row.update(extra)
    return row


def ledger_row(guid, name, company="C1", division="D1", **extra):
    """An mst_ledger export row."""
    row = {
        "guid": guid,
        "company_id": company,
        "division_id": division,
        "name": name,
        "parent": "Sundry Debtors",
        "opening_balance": "1,000.00",
        "it_pan": "ABCDE1234F",
    }
    row.update(extra)
    return row


@pytest.fixture
def tenant():
    return Tenant("C1", "D1")


@pytest.fixture
def other_tenant():
    return Tenant("C2", "D1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return VtSyncConfig(
        db_url="postgresql://localhost/test",
        batch_size=2,
        fetch_timeout=1.0,
        write_timeout=1.0,
        retry_attempts=1,
        conflict_resolution="manual",
        default_page_size=50,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def source():
    return MemoryLegacySource()


@pytest.fixture
def engine(store, source, config, clock):
    return SyncEngine(store, source, config=config, clock=clock)


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires PostgreSQL at DB_URL)"
    )
