"""
Tests for the sync engine.

Run against the in-memory store and legacy source; see test_postgres.py for
the database-backed checks.
"""
import asyncio
from datetime import datetime, timezone

import pytest
from loguru import logger

from conftest import FakeClock, T0, ledger_row, voucher_row
from tally_vt_sync.errors import ConfigurationError, SourceUnavailable, TenantResolutionError
from tally_vt_sync.filters import Query
from tally_vt_sync.mapping import MappingTable, TableMapping
from tally_vt_sync.repository import TenantRepository
from tally_vt_sync.sources import MemoryLegacySource
from tally_vt_sync.status import SyncStatusStore
from tally_vt_sync.store import MemoryStore
from tally_vt_sync.sync import SyncEngine, is_locally_modified
from tally_vt_sync.tenant import Tenant


async def all_rows(store, table, tenant):
    return (await store.query(table, tenant, Query())).rows


class GatedSource(MemoryLegacySource):
    """Blocks every fetch until the gate opens."""

    def __init__(self, tables):
        super().__init__(tables)
        self.gate = asyncio.Event()

    async def fetch_rows(self, table, tenant, cursor=None, batch_size=1000):
        await self.gate.wait()
        return await super().fetch_rows(table, tenant, cursor=cursor, batch_size=batch_size)


class FailingSource(MemoryLegacySource):
    """Raises SourceUnavailable for the named tables."""

    def __init__(self, tables, failing):
        super().__init__(tables)
        self.failing = set(failing)

    async def fetch_rows(self, table, tenant, cursor=None, batch_size=1000):
        if table in self.failing:
            raise SourceUnavailable(table, "connection refused")
        return await super().fetch_rows(table, tenant, cursor=cursor, batch_size=batch_size)


class SlowSource(MemoryLegacySource):
    async def fetch_rows(self, table, tenant, cursor=None, batch_size=1000):
        await asyncio.sleep(5)
        return await super().fetch_rows(table, tenant, cursor=cursor, batch_size=batch_size)


class SlowStore(MemoryStore):
    """Sync writes to the named tables never finish in time."""

    def __init__(self, slow_tables):
        super().__init__()
        self.slow_tables = set(slow_tables)

    async def upsert(self, table, tenant, guid, values, **kwargs):
        if table in self.slow_tables:
            await asyncio.sleep(5)
        return await super().upsert(table, tenant, guid, values, **kwargs)


class GatedDirectoryStore(MemoryStore):
    """Tenant lookups wait for the gate, then find no tenant."""

    def __init__(self):
        super().__init__(tenants=[])
        self.gate = asyncio.Event()

    async def has_tenant(self, tenant):
        await self.gate.wait()
        return await super().has_tenant(tenant)


class TestSyncBasics:
    """Insert, mapping and counters."""

    @pytest.mark.asyncio
    async def test_inserts_mapped_rows(self, engine, source, store, tenant):
        """Rows are renamed, coerced and tagged with the tenant."""
        source.tables["mst_ledger"] = [ledger_row("L1", "Acme Traders")]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 1
        assert result.errors == 0
        row = await store.get_by_natural_key("vt_ledgers", tenant, "L1")
        assert row["name"] == "Acme Traders"
        assert row["pan"] == "ABCDE1234F"
        assert row["opening_balance"] == 1000.0
        assert row["company_id"] == "C1"
        assert row["division_id"] == "D1"
        assert row["last_synced_at"] == T0
        assert row["updated_at"] == T0

    @pytest.mark.asyncio
    async def test_batches_follow_cursor(self, engine, source, store, tenant):
        """Five rows with batch_size 2 take three fetches."""
        source.tables["tally_trn_voucher"] = [voucher_row(f"V{i}", 10 * i) for i in range(5)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 5
        fetches = [f for f in source.fetches if f[0] == "tally_trn_voucher"]
        assert [f[2] for f in fetches] == [None, "2", "4"]
        assert len(await all_rows(store, "vt_vouchers", tenant)) == 5

    @pytest.mark.asyncio
    async def test_table_results_reported(self, engine, source):
        source.tables["mst_ledger"] = [ledger_row("L1", "Cash")]
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.table_results["vt_ledgers"].processed == 1
        assert result.table_results["vt_vouchers"].processed == 1
        assert result.table_results["vt_groups"].processed == 0

    @pytest.mark.asyncio
    async def test_selected_tables_only(self, engine, source, store, tenant):
        source.tables["mst_ledger"] = [ledger_row("L1", "Cash")]
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]

        result = await engine.sync_tenant("C1", "D1", tables=["vt_vouchers"])

        assert list(result.table_results) == ["vt_vouchers"]
        assert await store.get_by_natural_key("vt_ledgers", tenant, "L1") is None

    @pytest.mark.asyncio
    async def test_masters_synced_before_transactions(self, engine, source):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]
        source.tables["mst_ledger"] = [ledger_row("L1", "Cash")]

        await engine.sync_tenant("C1", "D1")

        order = [f[0] for f in source.fetches]
        assert order.index("mst_ledger") < order.index("tally_trn_voucher")


class TestIdempotence:
    """Re-running without legacy changes writes nothing."""

    @pytest.mark.asyncio
    async def test_second_run_processes_nothing(self, engine, source, store, tenant, clock):
        source.tables["mst_ledger"] = [ledger_row("L1", "Cash"), ledger_row("L2", "Bank")]
        source.tables["tally_trn_voucher"] = [voucher_row("V1", "1,250.50")]

        first = await engine.sync_tenant("C1", "D1")
        before = await all_rows(store, "vt_ledgers", tenant) + await all_rows(store, "vt_vouchers", tenant)

        clock.advance(hours=1)
        second = await engine.sync_tenant("C1", "D1")
        after = await all_rows(store, "vt_ledgers", tenant) + await all_rows(store, "vt_vouchers", tenant)

        assert first.records_processed == 3
        assert second.records_processed == 0
        assert second.errors == 0
        assert second.skipped == 3
        assert after == before


class TestTenantIsolation:

    @pytest.mark.asyncio
    async def test_only_requested_tenant_written(self, engine, source, store, tenant, other_tenant):
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 100),
            voucher_row("V2", 200, company="C2"),
        ]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 1
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V1") is not None
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V2") is None
        assert await all_rows(store, "vt_vouchers", other_tenant) == []

    @pytest.mark.asyncio
    async def test_same_guid_in_two_tenants(self, engine, source, store, tenant, other_tenant):
        """The natural key is (tenant, guid): equal guids do not collide across tenants."""
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 100),
            voucher_row("V1", 999, company="C2"),
        ]

        await engine.sync_tenant("C1", "D1")
        await engine.sync_tenant("C2", "D1")

        mine = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        theirs = await store.get_by_natural_key("vt_vouchers", other_tenant, "V1")
        assert mine["amount"] == 100.0
        assert theirs["amount"] == 999.0

    @pytest.mark.asyncio
    async def test_foreign_row_from_source_rejected(self, store, config, clock, tenant):
        """A source that leaks another tenant's row gets it counted as an error."""

        class LeakySource(MemoryLegacySource):
            async def fetch_rows(self, table, tenant, cursor=None, batch_size=1000):
                return await super().fetch_rows(table, Tenant("C2", "D1"), cursor, batch_size)

        source = LeakySource({"tally_trn_voucher": [voucher_row("V9", 1, company="C2")]})
        engine = SyncEngine(store, source, config=config, clock=clock)

        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 1
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V9") is None


class TestConflicts:

    @pytest.mark.asyncio
    async def test_local_edit_preserved(self, engine, source, store, tenant, clock):
        """A row edited after its last sync is left alone and counted as one error."""
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100, updated_at="2024-03-31T00:00:00Z")]
        await engine.sync_tenant("C1", "D1")

        clock.advance(minutes=5)
        repo = TenantRepository(store, "vt_vouchers", tenant, clock=clock)
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        await repo.update(row["id"], {"narration": "fixed by hand"})

        clock.advance(minutes=5)
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 175, updated_at=clock.now.isoformat())
        ]
        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 1
        assert result.records_processed == 0
        kept = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        assert kept["narration"] == "fixed by hand"
        assert kept["amount"] == 100.0

    @pytest.mark.asyncio
    async def test_conflict_recurs_until_resolved(self, engine, source, store, tenant, clock):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]
        await engine.sync_tenant("C1", "D1")
        clock.advance(minutes=1)
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        await TenantRepository(store, "vt_vouchers", tenant, clock=clock).update(row["id"], {"amount": 1})

        clock.advance(minutes=1)
        assert (await engine.sync_tenant("C1", "D1")).errors == 1
        clock.advance(minutes=1)
        assert (await engine.sync_tenant("C1", "D1")).errors == 1

    @pytest.mark.asyncio
    async def test_legacy_wins_overwrites_local_edit(self, store, source, config, clock, tenant):
        config.conflict_resolution = "legacy_wins"
        engine = SyncEngine(store, source, config=config, clock=clock)
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]
        await engine.sync_tenant("C1", "D1")

        clock.advance(minutes=1)
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        await TenantRepository(store, "vt_vouchers", tenant, clock=clock).update(row["id"], {"amount": 1})

        clock.advance(minutes=1)
        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 0
        assert result.records_processed == 1
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        assert row["amount"] == 100.0
        assert not is_locally_modified(row)

    @pytest.mark.asyncio
    async def test_newer_legacy_version_updates(self, engine, source, store, tenant, clock):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100, updated_at="2024-03-31T00:00:00Z")]
        await engine.sync_tenant("C1", "D1")

        clock.advance(days=1)
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 120, updated_at=clock.now.isoformat())
        ]
        clock.advance(minutes=1)
        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 1
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        assert row["amount"] == 120.0
        assert row["last_synced_at"] == clock.now

    @pytest.mark.asyncio
    async def test_stale_legacy_version_is_conflict(self, engine, source, store, tenant, clock):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100, updated_at="2024-03-31T00:00:00Z")]
        await engine.sync_tenant("C1", "D1")

        clock.advance(days=1)
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 90, updated_at="2024-03-30T00:00:00Z")
        ]
        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 1
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        assert row["amount"] == 100.0

    @pytest.mark.asyncio
    async def test_legacy_edit_stamped_before_last_sync_updates(self, engine, source, store, tenant, clock):
        """A lagging export stamps the edit before our last run; it still applies."""
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100, updated_at="2024-03-01T00:00:00Z")]
        await engine.sync_tenant("C1", "D1")

        # Edited in Tally at 08:00, exported after the 09:00 run
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 200, updated_at="2024-04-01T08:00:00Z")
        ]
        clock.advance(days=1)
        result = await engine.sync_tenant("C1", "D1")
        again = await engine.sync_tenant("C1", "D1")

        assert result.errors == 0
        assert result.records_processed == 1
        row = await store.get_by_natural_key("vt_vouchers", tenant, "V1")
        assert row["amount"] == 200.0
        assert row["legacy_updated_at"] == datetime(2024, 4, 1, 8, 0, tzinfo=timezone.utc)
        assert row["updated_at"] == clock.now
        assert again.errors == 0
        assert again.records_processed == 0

    @pytest.mark.asyncio
    async def test_untimestamped_change_updates(self, engine, source, store, tenant, clock):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]
        await engine.sync_tenant("C1", "D1")

        clock.advance(days=1)
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 110)]
        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 1
        assert (await store.get_by_natural_key("vt_vouchers", tenant, "V1"))["amount"] == 110.0


class TestDedup:

    @pytest.mark.asyncio
    async def test_backup_preferred_over_active_source(self, engine, source, store, tenant):
        """tally_trn_voucher V1=100 and bkp_tally_trn_voucher V1=150 give one row with 150."""
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]
        source.tables["bkp_tally_trn_voucher"] = [voucher_row("V1", 150)]

        result = await engine.sync_tenant("C1", "D1")

        rows = await all_rows(store, "vt_vouchers", tenant)
        assert len(rows) == 1
        assert rows[0]["amount"] == 150.0
        assert result.records_processed == 1
        assert result.skipped == 1
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_active_rows_missing_from_backup_still_synced(self, engine, source, store, tenant):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100), voucher_row("V2", 200)]
        source.tables["bkp_tally_trn_voucher"] = [voucher_row("V1", 150)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 2
        assert (await store.get_by_natural_key("vt_vouchers", tenant, "V2"))["amount"] == 200.0

    @pytest.mark.asyncio
    async def test_duplicate_within_source_keeps_first(self, engine, source, store, tenant):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100), voucher_row("V1", 300)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 1
        assert result.skipped == 1
        assert (await store.get_by_natural_key("vt_vouchers", tenant, "V1"))["amount"] == 100.0

    @pytest.mark.asyncio
    async def test_missing_backup_is_not_an_error(self, engine, source):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 0
        assert "bkp_tally_trn_voucher" not in [f[0] for f in source.fetches]


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_invalid_row_counted_and_skipped(self, engine, source, store, tenant):
        source.tables["tally_trn_voucher"] = [
            voucher_row("V1", 100),
            voucher_row("V2", 200, voucher_type=""),
            {"company_id": "C1", "division_id": "D1", "voucher_type": "Sales", "date": "20240401"},
            voucher_row("V3", 300),
        ]

        result = await engine.sync_tenant("C1", "D1")

        assert result.records_processed == 2
        assert result.errors == 2
        assert len(result.error_details) == 2
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V2") is None

    @pytest.mark.asyncio
    async def test_unreachable_source_does_not_stop_siblings(self, store, config, clock, tenant):
        source = FailingSource(
            {
                "mst_ledger": [ledger_row("L1", "Cash")],
                "tally_trn_voucher": [voucher_row("V1", 100)],
            },
            failing=["mst_ledger"],
        )
        engine = SyncEngine(store, source, config=config, clock=clock)

        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 1
        assert result.records_processed == 1
        assert result.table_results["vt_ledgers"].errors == 1
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V1") is not None

    @pytest.mark.asyncio
    async def test_fetch_timeout_counts_as_source_failure(self, store, config, clock):
        config.fetch_timeout = 0.05
        source = SlowSource({"tally_trn_voucher": [voucher_row("V1", 100)]})
        engine = SyncEngine(store, source, config=config, clock=clock)

        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 1
        assert result.records_processed == 0
        assert "timed out" in result.error_details[0]

    @pytest.mark.asyncio
    async def test_write_timeout_counts_per_row(self, config, clock, tenant):
        config.write_timeout = 0.05
        store = SlowStore(["vt_vouchers"])
        source = MemoryLegacySource({
            "mst_ledger": [ledger_row("L1", "Cash")],
            "tally_trn_voucher": [voucher_row("V1", 100), voucher_row("V2", 200)],
        })
        engine = SyncEngine(store, source, config=config, clock=clock)

        result = await engine.sync_tenant("C1", "D1")

        vouchers = result.table_results["vt_vouchers"]
        assert vouchers.errors == 2
        assert vouchers.processed == 0
        assert all("write timed out" in d for d in vouchers.error_details)
        assert result.table_results["vt_ledgers"].processed == 1
        assert result.records_processed == 1
        assert result.errors == 2
        assert await store.get_by_natural_key("vt_ledgers", tenant, "L1") is not None

    @pytest.mark.asyncio
    async def test_error_details_bounded(self, store, source, config, clock):
        config.max_error_details = 3
        engine = SyncEngine(store, source, config=config, clock=clock)
        source.tables["tally_trn_voucher"] = [voucher_row(f"V{i}", 1, voucher_type="") for i in range(10)]

        result = await engine.sync_tenant("C1", "D1")

        assert result.errors == 10
        assert len(result.error_details) == 3


class TestConfigurationAndTenants:

    def test_bad_mapping_halts_construction(self, store, source, config):
        mappings = MappingTable([TableMapping.with_backup("mst_ledger", "vt_nope")])
        with pytest.raises(ConfigurationError):
            SyncEngine(store, source, config=config, mappings=mappings)

    @pytest.mark.asyncio
    async def test_unknown_table_raises_before_io(self, engine, source):
        with pytest.raises(ConfigurationError):
            await engine.sync_tenant("C1", "D1", tables=["vt_nope"])
        assert source.fetches == []

    @pytest.mark.asyncio
    async def test_blank_tenant_raises(self, engine):
        with pytest.raises(TenantResolutionError):
            await engine.sync_tenant("", "D1")

    @pytest.mark.asyncio
    async def test_unknown_tenant_raises(self, source, config, clock):
        store = MemoryStore(tenants=[Tenant("C1", "D1")])
        engine = SyncEngine(store, source, config=config, clock=clock)
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100, company="C9")]

        with pytest.raises(TenantResolutionError):
            await engine.sync_tenant("C9", "D1")
        assert source.fetches == []
        assert not engine.status.is_running(Tenant("C9", "D1"))


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_same_tenant_calls_share_one_run(self, store, config, clock):
        source = GatedSource({"tally_trn_voucher": [voucher_row("V1", 100)]})
        engine = SyncEngine(store, source, config=config, clock=clock)

        first = asyncio.create_task(engine.sync_tenant("C1", "D1"))
        await asyncio.sleep(0)
        assert engine.status.is_running(Tenant("C1", "D1"))
        second = asyncio.create_task(engine.sync_tenant("C1", "D1"))
        await asyncio.sleep(0)
        source.gate.set()

        r1, r2 = await asyncio.gather(first, second)

        assert r1 is r2
        assert r1.records_processed == 1
        assert [f[0] for f in source.fetches].count("tally_trn_voucher") == 1
        assert not engine.status.is_running(Tenant("C1", "D1"))

    @pytest.mark.asyncio
    async def test_different_tenants_run_independently(self, store, config, clock):
        source = GatedSource({
            "tally_trn_voucher": [voucher_row("V1", 100), voucher_row("V2", 200, company="C2")],
        })
        engine = SyncEngine(store, source, config=config, clock=clock)

        first = asyncio.create_task(engine.sync_tenant("C1", "D1"))
        second = asyncio.create_task(engine.sync_tenant("C2", "D1"))
        await asyncio.sleep(0)
        assert engine.status.is_running(Tenant("C1", "D1"))
        assert engine.status.is_running(Tenant("C2", "D1"))
        source.gate.set()

        r1, r2 = await asyncio.gather(first, second)

        assert r1 is not r2
        assert (r1.company_id, r1.records_processed) == ("C1", 1)
        assert (r2.company_id, r2.records_processed) == ("C2", 1)

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_run(self, store, config, clock, tenant):
        source = GatedSource({"tally_trn_voucher": [voucher_row("V1", 100)]})
        status = SyncStatusStore()
        engine = SyncEngine(store, source, config=config, status=status, clock=clock)

        caller = asyncio.create_task(engine.sync_tenant("C1", "D1"))
        await asyncio.sleep(0)
        run = status.in_flight(tenant)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        source.gate.set()
        result = await run

        assert result.records_processed == 1
        assert status.last_result(tenant) is result
        assert await store.get_by_natural_key("vt_vouchers", tenant, "V1") is not None

    @pytest.mark.asyncio
    async def test_failed_run_with_no_waiters_is_logged(self, source, config, clock, tenant):
        store = GatedDirectoryStore()
        engine = SyncEngine(store, source, config=config, clock=clock)
        messages = []
        sink = logger.add(messages.append, level="ERROR")
        try:
            caller = asyncio.create_task(engine.sync_tenant("C1", "D1"))
            await asyncio.sleep(0)
            run = engine.status.in_flight(tenant)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            store.gate.set()
            await asyncio.wait([run])
            await asyncio.sleep(0)
        finally:
            logger.remove(sink)

        assert isinstance(run.exception(), TenantResolutionError)
        assert any("VT sync for C1/D1 failed" in m for m in messages)
        assert not engine.status.is_running(tenant)


class TestStatusRecording:

    @pytest.mark.asyncio
    async def test_result_recorded(self, engine, source, tenant):
        source.tables["tally_trn_voucher"] = [voucher_row("V1", 100)]

        result = await engine.sync_tenant("C1", "D1")

        assert engine.status.last_result(tenant) is result
        assert result.started_at == T0
        assert result.success


# Run tests directly
if __name__ == "__main__":
    pytest.main([__file__, "-v", "-m", "not integration"])
