"""
Integrity checks over a tenant's VT tables.

Counts rows, duplicate names in master tables and references that point at
nothing (entries whose voucher is missing, ledgers whose group is unknown, ...)
and rolls them into a 0-100 health score.
"""
from __future__ import annotations
from typing import Iterable, Optional
from loguru import logger
from pydantic import BaseModel, Field

from .errors import VtSyncError
from .filters import Query
from .models import CATALOG, get_table
from .store import NormalizedStore
from .tenant import Tenant


class TableReport(BaseModel):
    table: str
    record_count: int = 0
    duplicates: int = 0
    missing_references: int = 0
    failed_checks: int = 0
    issues: list[str] = Field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return self.duplicates + self.missing_references + self.failed_checks


class ValidationReport(BaseModel):
    company_id: str
    division_id: str
    tables: list[TableReport] = Field(default_factory=list)
    total_records: int = 0
    total_issues: int = 0
    health_score: float = 100.0

    @property
    def success(self) -> bool:
        return self.total_issues == 0


def health_score(records: int, issues: int) -> float:
    if records <= 0:
        return 100.0
    return max(0.0, 100.0 - issues / records * 100.0)


async def validate_table(store: NormalizedStore, tenant: Tenant, name: str) -> TableReport:
    table = get_table(name)
    report = TableReport(table=name)
    try:
        report.record_count = await store.count(name, tenant, Query())
        if table.category == "master" and table.name_field:
            report.duplicates = await store.count_duplicates(name, tenant, table.name_field)
            if report.duplicates:
                report.issues.append(f"{report.duplicates} rows share a {table.name_field}")
        for ref in table.references:
            missing = await store.count_missing_references(
                name, tenant, ref.column, ref.target, ref.target_column
            )
            if missing:
                report.missing_references += missing
                report.issues.append(f"{missing} rows reference a missing {ref.target} via {ref.column}")
    except VtSyncError as e:
        logger.error(f"Validation of {name} for {tenant} failed: {e}")
        report.failed_checks += 1
        report.issues.append(f"check failed: {e}")
    return report


async def validate_tenant(
    store: NormalizedStore, tenant: Tenant, tables: Optional[Iterable[str]] = None
) -> ValidationReport:
    """
    Run the integrity checks for every VT table (or the given subset).

    Issue strings are descriptive only; the score is computed from the counts.
    """
    names = list(tables) if tables is not None else list(CATALOG)
    reports = [await validate_table(store, tenant, name) for name in names]

    total_records = sum(r.record_count for r in reports)
    total_issues = sum(r.issue_count for r in reports)
    score = health_score(total_records, total_issues)
    logger.info(
        f"Validation for {tenant}: {total_records} records, {total_issues} issues, "
        f"health {score:.1f}%"
    )
    return ValidationReport(
        company_id=tenant.company_id,
        division_id=tenant.division_id,
        tables=reports,
        total_records=total_records,
        total_issues=total_issues,
        health_score=score,
    )
