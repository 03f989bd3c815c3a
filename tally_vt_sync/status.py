"""
Sync run results and the per-tenant status store.

The status store is an explicit object handed to the engine. It holds the
last result of every tenant and the run currently in flight, if any; the
engine uses the latter to make concurrent calls for one tenant share a run.
"""
from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Iterable, Optional
from loguru import logger
from pydantic import BaseModel, Field

from .tenant import Tenant


class TableSyncResult(BaseModel):
    """Counters for one normalized table within a run."""

    table: str
    processed: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    error_details: list[str] = Field(default_factory=list)

    def add_error(self, message: str, limit: int = 100) -> None:
        self.errors += 1
        if len(self.error_details) < limit:
            self.error_details.append(message)


class SyncRunResult(BaseModel):
    """
    Outcome of one sync run for one tenant.

    records_processed counts rows inserted or updated; skipped counts
    duplicates and unchanged rows; errors counts rejected rows, conflicts,
    failed writes and unreachable sources. Callers detect partial failure
    via errors > 0.
    """

    company_id: str
    division_id: str
    records_processed: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    started_at: datetime
    finished_at: Optional[datetime] = None
    table_results: dict[str, TableSyncResult] = Field(default_factory=dict)
    error_details: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.errors == 0

    @classmethod
    def from_tables(
        cls,
        tenant: Tenant,
        tables: Iterable[TableSyncResult],
        started_at: datetime,
        finished_at: Optional[datetime],
        max_error_details: int = 100,
    ) -> "SyncRunResult":
        tables = list(tables)
        details: list[str] = []
        for t in tables:
            details.extend(f"{t.table}: {d}" for d in t.error_details)
        return cls(
            company_id=tenant.company_id,
            division_id=tenant.division_id,
            records_processed=sum(t.processed for t in tables),
            errors=sum(t.errors for t in tables),
            skipped=sum(t.skipped for t in tables),
            started_at=started_at,
            finished_at=finished_at,
            table_results={t.table: t for t in tables},
            error_details=details[:max_error_details],
        )


class SyncStatusStore:
    """
    Last result and in-flight run per tenant.

    Usage:
        status = SyncStatusStore()
        engine = SyncEngine(store, source, status=status)
        ...
        status.last_result(Tenant("C1", "D1"))
    """

    def __init__(self):
        self._results: dict[Tenant, SyncRunResult] = {}
        self._running: dict[Tenant, asyncio.Future] = {}

    def last_result(self, tenant: Tenant) -> Optional[SyncRunResult]:
        return self._results.get(tenant)

    def is_running(self, tenant: Tenant) -> bool:
        return tenant in self._running

    def in_flight(self, tenant: Tenant) -> Optional[asyncio.Future]:
        return self._running.get(tenant)

    def mark_started(self, tenant: Tenant, run: asyncio.Future) -> None:
        if tenant in self._running:
            raise RuntimeError(f"A sync for {tenant} is already running")
        self._running[tenant] = run

    def mark_finished(self, tenant: Tenant) -> None:
        self._running.pop(tenant, None)

    def record(self, tenant: Tenant, result: SyncRunResult) -> None:
        """Replace the tenant's last result wholesale."""
        self._results[tenant] = result

    def snapshot(self) -> dict[str, dict]:
        """Status of every known tenant, keyed by "company/division"."""
        tenants = set(self._results) | set(self._running)
        out = {}
        for tenant in sorted(tenants, key=str):
            result = self._results.get(tenant)
            out[str(tenant)] = {
                "running": tenant in self._running,
                "last_result": result.model_dump(mode="json") if result else None,
            }
        return out


async def derive_from_store(store, tenant: Tenant, tables: Iterable[str]) -> Optional[SyncRunResult]:
    """
    Rebuild a tenant's last result from the last_synced_at audit columns.

    Only rows stamped by the latest run are counted, so records_processed is a
    lower bound after a run that wrote nothing to some tables. Errors are not
    persisted and come back as 0. Returns None if nothing was ever synced.
    """
    audits = {}
    for table in tables:
        audits[table] = await store.sync_audit(table, tenant)

    stamps = [latest for latest, _ in audits.values() if latest is not None]
    if not stamps:
        return None
    last_run = max(stamps)

    table_results = [
        TableSyncResult(table=table, processed=count if latest == last_run else 0)
        for table, (latest, count) in audits.items()
    ]
    result = SyncRunResult.from_tables(tenant, table_results, started_at=last_run, finished_at=last_run)
    logger.debug(f"Derived sync status for {tenant}: {result.records_processed} rows at {last_run}")
    return result
