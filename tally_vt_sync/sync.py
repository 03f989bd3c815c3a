"""
Sync orchestration: legacy export tables -> VT schema, one tenant at a time.

Provides:
- Tenant sync: every mapped VT table, masters before transactions
- Selective sync: a subset of VT tables
- Status: last result and in-flight run per tenant (see status.py)
"""
from __future__ import annotations
import argparse
import asyncio
import os
import sys
from datetime import datetime
from functools import partial
from typing import Iterable, Optional
from loguru import logger

from .clock import Clock, utcnow
from .coerce import parse_text
from .config import VtSyncConfig
from .errors import (
    ConfigurationError,
    ConflictError,
    ConstraintViolation,
    SourceUnavailable,
    StoreError,
    TenantResolutionError,
    ValidationError,
    VtSyncError,
)
from .mapping import MappingTable
from .models import VtTable, get_table
from .sources import LegacySource, build_source
from .status import SyncRunResult, SyncStatusStore, TableSyncResult, derive_from_store
from .store import NormalizedStore, PostgresStore
from .tenant import Tenant, resolve_tenant
from .validation import ValidationReport, validate_tenant

# Outcomes of a single row upsert
INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"


def is_locally_modified(row: dict) -> bool:
    """True when row was edited through the repository after its last sync."""
    synced = row.get("last_synced_at")
    return synced is None or row["updated_at"] > synced


def _same_values(row: dict, values: dict) -> bool:
    return all(row.get(column) == value for column, value in values.items())


def _log_run_failure(tenant: Tenant, run: asyncio.Future) -> None:
    # Retrieves the exception even when every caller stopped waiting
    if run.cancelled():
        return
    error = run.exception()
    if error is not None:
        logger.error(f"VT sync for {tenant} failed: {error}")


class SyncEngine:
    """
    Copies one tenant's legacy rows into the VT tables.

    Usage:
        engine = SyncEngine(store, source)
        result = await engine.sync_tenant("C1", "D1")
        if result.errors:
            ...

    Partial failures (bad rows, conflicts, unreachable sources) are counted in
    the result. Only ConfigurationError and TenantResolutionError propagate.
    """

    def __init__(
        self,
        store: NormalizedStore,
        source: LegacySource,
        config: Optional[VtSyncConfig] = None,
        mappings: Optional[MappingTable] = None,
        status: Optional[SyncStatusStore] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or VtSyncConfig.from_env()
        self.store = store
        self.source = source
        self.mappings = mappings or MappingTable()
        self.mappings.validate()
        self.status = status or SyncStatusStore()
        self.clock = clock

    def _plan(self, tables: Optional[Iterable[str]]) -> list[VtTable]:
        ordered = self.mappings.targets()
        if tables is None:
            return [get_table(t) for t in ordered]
        wanted = set(tables)
        unknown = wanted - set(ordered)
        if unknown:
            raise ConfigurationError(f"Not a mapped VT table: {', '.join(sorted(unknown))}")
        return [get_table(t) for t in ordered if t in wanted]

    async def sync_tenant(
        self, company_id, division_id, tables: Optional[Iterable[str]] = None
    ) -> SyncRunResult:
        """
        Sync every mapped table (or the given subset) for one tenant.

        A call for a tenant whose run is already in flight waits for and returns
        that run's result instead of starting a second one. Cancelling the
        awaiting caller does not cancel the run.

        Raises:
            ConfigurationError: unknown table requested
            TenantResolutionError: blank, unknown or unreachable tenant
        """
        tenant = Tenant.from_ids(company_id, division_id)

        running = self.status.in_flight(tenant)
        if running is not None:
            logger.info(f"Sync for {tenant} already running, waiting for it")
            return await asyncio.shield(running)

        plan = self._plan(tables)
        run = asyncio.ensure_future(self._run(tenant, plan))
        run.add_done_callback(partial(_log_run_failure, tenant))
        # Registered before the first suspension point of this call
        self.status.mark_started(tenant, run)
        return await asyncio.shield(run)

    async def _run(self, tenant: Tenant, plan: list[VtTable]) -> SyncRunResult:
        started = self.clock()
        try:
            await resolve_tenant(
                tenant.company_id, tenant.division_id, self.store,
                timeout=self.config.fetch_timeout,
            )
            logger.info(f"=== VT sync for {tenant}: {len(plan)} tables ===")

            table_results = []
            for table in plan:
                table_results.append(await self._sync_table(tenant, table, started))

            result = SyncRunResult.from_tables(
                tenant, table_results, started, self.clock(), self.config.max_error_details
            )
            self.status.record(tenant, result)
            log = logger.info if result.success else logger.warning
            log(
                f"VT sync for {tenant} finished: {result.records_processed} processed, "
                f"{result.skipped} skipped, {result.errors} errors"
            )
            return result
        finally:
            self.status.mark_finished(tenant)

    async def _sync_table(self, tenant: Tenant, table: VtTable, synced_at: datetime) -> TableSyncResult:
        result = TableSyncResult(table=table.name)
        # guids already written (or rejected) this run, across all sources of the table
        seen: set[str] = set()

        for legacy_name in self.mappings.sources_for(table.name):
            try:
                present = await asyncio.wait_for(
                    self.source.has_table(legacy_name), timeout=self.config.fetch_timeout
                )
                if not present:
                    logger.debug(f"{legacy_name}: not present, skipping")
                    continue
                await self._sync_source(tenant, table, legacy_name, seen, synced_at, result)
            except asyncio.TimeoutError:
                self._source_failed(result, legacy_name, f"timed out after {self.config.fetch_timeout}s")
            except SourceUnavailable as e:
                self._source_failed(result, legacy_name, str(e))

        logger.info(
            f"{table.name}: {result.processed} processed, {result.skipped} skipped, "
            f"{result.errors} errors"
        )
        return result

    def _source_failed(self, result: TableSyncResult, legacy_name: str, message: str) -> None:
        logger.error(f"Legacy source {legacy_name} unavailable: {message}")
        result.add_error(f"{legacy_name} unavailable: {message}", self.config.max_error_details)

    async def _sync_source(
        self,
        tenant: Tenant,
        table: VtTable,
        legacy_name: str,
        seen: set[str],
        synced_at: datetime,
        result: TableSyncResult,
    ) -> None:
        cursor = None
        batch_no = 0
        while True:
            batch = await asyncio.wait_for(
                self.source.fetch_rows(legacy_name, tenant, cursor=cursor,
                                       batch_size=self.config.batch_size),
                timeout=self.config.fetch_timeout,
            )
            batch_no += 1
            logger.debug(f"{legacy_name}: batch {batch_no} with {len(batch.rows)} rows")

            for raw in batch.rows:
                await self._sync_row(tenant, table, legacy_name, raw, seen, synced_at, result)

            if not batch.next_cursor or not batch.rows:
                break
            cursor = batch.next_cursor

    async def _sync_row(
        self,
        tenant: Tenant,
        table: VtTable,
        legacy_name: str,
        raw: dict,
        seen: set[str],
        synced_at: datetime,
        result: TableSyncResult,
    ) -> None:
        limit = self.config.max_error_details
        guid = parse_text(raw.get("guid"))
        if guid is not None:
            if guid in seen:
                result.skipped += 1
                return
            # A backup row claims its guid even if it turns out to be invalid
            seen.add(guid)

        try:
            if any(col in raw for col in ("company_id", "division_id")) and not tenant.owns(raw):
                raise ValidationError(f"{legacy_name}[{guid}]: row belongs to another tenant")
            guid, values, legacy_ts = table.map_row(raw)
        except ValidationError as e:
            logger.warning(f"Rejected row from {legacy_name}: {e}")
            result.add_error(str(e), limit)
            return

        try:
            outcome = await asyncio.wait_for(
                self._upsert(tenant, table, guid, values, legacy_ts, synced_at),
                timeout=self.config.write_timeout,
            )
        except ConflictError as e:
            logger.warning(f"Conflict: {e}")
            result.add_error(str(e), limit)
        except asyncio.TimeoutError:
            logger.error(f"{table.name}[{guid}]: write timed out after {self.config.write_timeout}s")
            result.add_error(f"{table.name}[{guid}]: write timed out", limit)
        except (ConstraintViolation, StoreError) as e:
            logger.error(f"{table.name}[{guid}]: write failed: {e}")
            result.add_error(f"{table.name}[{guid}]: {e}", limit)
        else:
            if outcome == UNCHANGED:
                result.skipped += 1
            else:
                result.processed += 1

    async def _upsert(
        self,
        tenant: Tenant,
        table: VtTable,
        guid: str,
        values: dict,
        legacy_ts: Optional[datetime],
        synced_at: datetime,
    ) -> str:
        existing = await self.store.get_by_natural_key(table.name, tenant, guid)
        if existing is None:
            await self.store.upsert(
                table.name, tenant, guid, values,
                synced_at=synced_at, legacy_updated_at=legacy_ts,
            )
            return INSERTED

        # Legacy timestamps are only compared with legacy timestamps
        synced_version = existing.get("legacy_updated_at")

        if is_locally_modified(existing):
            if self.config.conflict_resolution != "legacy_wins":
                raise ConflictError(table.name, guid, "edited locally since the last sync")
            logger.debug(f"{table.name}[{guid}]: overwriting local edit (legacy_wins)")
        elif _same_values(existing, values):
            return UNCHANGED
        elif legacy_ts is not None and synced_version is not None and legacy_ts <= synced_version:
            raise ConflictError(
                table.name, guid,
                f"legacy version {legacy_ts.isoformat()} is not newer than the synced "
                f"version {synced_version.isoformat()}",
            )

        await self.store.upsert(
            table.name, tenant, guid, values,
            synced_at=synced_at, expected_updated_at=existing["updated_at"],
            legacy_updated_at=legacy_ts,
        )
        return UPDATED

    async def close(self) -> None:
        await self.source.close()
        await self.store.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


def build_engine(config: Optional[VtSyncConfig] = None, status: Optional[SyncStatusStore] = None) -> SyncEngine:
    """Create an engine on the PostgreSQL store and the configured legacy source."""
    config = config or VtSyncConfig.from_env()
    problems = config.validate()
    if problems:
        raise ConfigurationError("; ".join(problems))
    return SyncEngine(PostgresStore(config), build_source(config), config=config, status=status)


async def run_sync(
    company_id: str,
    division_id: str,
    tables: Optional[list[str]] = None,
    config: Optional[VtSyncConfig] = None,
) -> SyncRunResult:
    """
    Convenience function to run one tenant sync against the configured databases.

    Args:
        company_id: Tenant company
        division_id: Tenant division
        tables: Specific VT tables (default: all mapped tables)
        config: Optional config override

    Returns:
        SyncRunResult for the run
    """
    async with build_engine(config) as engine:
        return await engine.sync_tenant(company_id, division_id, tables=tables)


def _configure_logging(config: VtSyncConfig, verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else config.log_level.upper())
    if config.log_file:
        logger.add(config.log_file, level="DEBUG", rotation="10 MB", retention=5)


def _print_result(result: SyncRunResult) -> None:
    print("\n=== Sync Results ===")
    print(f"tenant: {result.company_id}/{result.division_id}")
    for name, table in result.table_results.items():
        print(f"  {name}: {table.processed} processed, {table.skipped} skipped, {table.errors} errors")
    print(f"records_processed: {result.records_processed}")
    print(f"skipped: {result.skipped}")
    print(f"errors: {result.errors}")
    for detail in result.error_details:
        print(f"  ! {detail}")


def _print_report(report: ValidationReport) -> None:
    print("\n=== Validation ===")
    for table in report.tables:
        print(f"  {table.table}: {table.record_count} rows")
        for issue in table.issues:
            print(f"    - {issue}")
    print(f"health score: {report.health_score:.1f}% ({report.total_issues} issues)")


async def _main(args: argparse.Namespace, config: VtSyncConfig) -> int:
    async with build_engine(config) as engine:
        if args.init_schema:
            await engine.store.initialize_schema()
            print("Schema initialized successfully")
            if not args.company:
                return 0

        if not args.company or not args.division:
            print("--company and --division are required", file=sys.stderr)
            return 2
        tenant = Tenant.from_ids(args.company, args.division)

        if args.register_tenant is not None:
            await engine.store.register_tenant(tenant, args.register_tenant or None)

        if args.status:
            result = await derive_from_store(engine.store, tenant, engine.mappings.targets())
            if result is None:
                print(f"No sync recorded for {tenant}")
            else:
                print(f"Last sync for {tenant} at {result.finished_at}: "
                      f"{result.records_processed} rows stamped")
            return 0

        exit_code = 0
        if not args.validate_only:
            result = await engine.sync_tenant(tenant.company_id, tenant.division_id, tables=args.tables)
            _print_result(result)
            exit_code = 0 if result.success else 1

        if args.validate or args.validate_only:
            report = await validate_tenant(engine.store, tenant, args.tables)
            _print_report(report)

        return exit_code


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Tally VT sync - copy legacy export tables into the tenant-scoped VT schema"
    )
    parser.add_argument("--company", default=os.getenv("VT_COMPANY_ID"), help="Tenant company id")
    parser.add_argument("--division", default=os.getenv("VT_DIVISION_ID"), help="Tenant division id")
    parser.add_argument(
        "--tables",
        nargs="*",
        help="Specific VT tables to sync (default: all mapped tables)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the VT schema and tables before syncing",
    )
    parser.add_argument(
        "--register-tenant",
        nargs="?",
        const="",
        metavar="NAME",
        help="Register the tenant in vt_tenants (optionally with a display name)",
    )
    parser.add_argument("--validate", action="store_true", help="Run integrity checks after the sync")
    parser.add_argument("--validate-only", action="store_true", help="Run integrity checks without syncing")
    parser.add_argument("--status", action="store_true", help="Show the last sync recorded in the VT tables")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    config = VtSyncConfig.from_env()
    _configure_logging(config, args.verbose)

    try:
        return asyncio.run(_main(args, config))
    except (ConfigurationError, TenantResolutionError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except VtSyncError as e:
        logger.error(f"Sync failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
