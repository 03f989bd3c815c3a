"""
In-process normalized store.

Keeps rows in dictionaries and mirrors the PostgreSQL store's semantics
(tenant scoping, the (tenant, guid) unique key, NULL ordering, atomic batch
inserts). Used by the unit tests and handy for dry runs.
"""
from __future__ import annotations
import itertools
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from ..errors import ConflictError, ConstraintViolation, NotFound
from ..filters import Query
from ..models import get_table
from ..tenant import Tenant
from .base import QueryResult


class MemoryStore:
    """
    Usage:
        store = MemoryStore(tenants=[Tenant("C1", "D1")])
        await store.upsert("vt_ledgers", tenant, "guid-1", {"name": "Cash"}, synced_at=now)

    With tenants=None every tenant is considered known.
    """

    def __init__(self, tenants: Optional[Iterable[Tenant]] = None):
        self._tenants: Optional[set[Tenant]] = set(tenants) if tenants is not None else None
        self._rows: dict[str, dict[int, dict]] = defaultdict(dict)
        self._ids = defaultdict(lambda: itertools.count(1))

    # Tenants

    async def has_tenant(self, tenant: Tenant) -> bool:
        return self._tenants is None or tenant in self._tenants

    async def register_tenant(self, tenant: Tenant, name: Optional[str] = None) -> None:
        if self._tenants is not None:
            self._tenants.add(tenant)

    # Helpers

    def _scoped(self, table: str, tenant: Tenant) -> list[dict]:
        get_table(table)
        return [row for row in self._rows[table].values() if tenant.owns(row)]

    def _find_guid(self, table: str, tenant: Tenant, guid: Optional[str]) -> Optional[dict]:
        if guid is None:
            return None
        for row in self._scoped(table, tenant):
            if row["guid"] == guid:
                return row
        return None

    def _new_row(self, table: str, tenant: Tenant, values: dict, now: datetime,
                 synced_at: Optional[datetime] = None) -> dict:
        vt_table = get_table(table)
        row = {column: None for column in vt_table.all_columns}
        row.update({k: v for k, v in values.items() if vt_table.has_column(k)})
        row.update(
            id=next(self._ids[table]),
            company_id=tenant.company_id,
            division_id=tenant.division_id,
            created_at=now,
            updated_at=now,
            last_synced_at=synced_at,
        )
        return row

    # Reads

    async def get(self, table: str, tenant: Tenant, row_id: int) -> Optional[dict]:
        get_table(table)
        row = self._rows[table].get(row_id)
        if row is None or not tenant.owns(row):
            return None
        return dict(row)

    async def get_by_natural_key(self, table: str, tenant: Tenant, guid: str) -> Optional[dict]:
        row = self._find_guid(table, tenant, guid)
        return dict(row) if row is not None else None

    async def query(self, table: str, tenant: Tenant, query: Query) -> QueryResult:
        matched = sorted(
            (row for row in self._scoped(table, tenant) if query.matches(row)),
            key=lambda r: r["id"],
        )
        if query.order_by:
            column = query.order_by
            present = [r for r in matched if r.get(column) is not None]
            nulls = [r for r in matched if r.get(column) is None]
            # Stable sort keeps id ascending among ties, as ORDER BY col, id does
            present.sort(key=lambda r: r[column], reverse=not query.ascending)
            # PostgreSQL default: NULLS LAST ascending, NULLS FIRST descending
            matched = present + nulls if query.ascending else nulls + present

        total = len(matched)
        page = matched[query.offset:]
        if query.limit is not None:
            page = page[:query.limit]
        return QueryResult(rows=[dict(r) for r in page], total=total)

    async def count(self, table: str, tenant: Tenant, query: Query) -> int:
        return sum(1 for row in self._scoped(table, tenant) if query.matches(row))

    # Sync writes

    async def upsert(
        self,
        table: str,
        tenant: Tenant,
        guid: str,
        values: dict,
        *,
        synced_at: datetime,
        expected_updated_at: Optional[datetime] = None,
        legacy_updated_at: Optional[datetime] = None,
    ) -> dict:
        existing = self._find_guid(table, tenant, guid)

        if expected_updated_at is None:
            if existing is not None:
                raise ConflictError(table, guid, "row was created concurrently")
            row = self._new_row(table, tenant, {**values, "guid": guid}, synced_at, synced_at)
            row["legacy_updated_at"] = legacy_updated_at
            self._rows[table][row["id"]] = row
            return dict(row)

        if existing is None:
            raise ConflictError(table, guid, "row was deleted concurrently")
        if existing["updated_at"] != expected_updated_at:
            raise ConflictError(table, guid, "row was modified concurrently")

        vt_table = get_table(table)
        existing.update({k: v for k, v in values.items() if k in vt_table.columns})
        existing["updated_at"] = synced_at
        existing["last_synced_at"] = synced_at
        existing["legacy_updated_at"] = legacy_updated_at
        return dict(existing)

    # Local writes

    async def insert(self, table: str, tenant: Tenant, values: dict, *, now: datetime) -> dict:
        if self._find_guid(table, tenant, values.get("guid")) is not None:
            raise ConstraintViolation(f"{table}: guid {values['guid']!r} already exists")
        row = self._new_row(table, tenant, values, now)
        self._rows[table][row["id"]] = row
        return dict(row)

    async def insert_many(
        self, table: str, tenant: Tenant, rows: list[dict], *, now: datetime
    ) -> list[dict]:
        # Check everything before writing anything
        batch_guids: set[str] = set()
        for index, values in enumerate(rows):
            guid = values.get("guid")
            if guid is None:
                continue
            if guid in batch_guids or self._find_guid(table, tenant, guid) is not None:
                raise ConstraintViolation(f"{table}: guid {guid!r} already exists", row_index=index)
            batch_guids.add(guid)

        created = []
        for values in rows:
            row = self._new_row(table, tenant, values, now)
            self._rows[table][row["id"]] = row
            created.append(dict(row))
        return created

    async def update(
        self, table: str, tenant: Tenant, row_id: int, values: dict, *, now: datetime
    ) -> dict:
        vt_table = get_table(table)
        row = self._rows[table].get(row_id)
        if row is None or not tenant.owns(row):
            raise NotFound(table, row_id)

        guid = values.get("guid")
        if guid is not None and guid != row["guid"]:
            if self._find_guid(table, tenant, guid) is not None:
                raise ConstraintViolation(f"{table}: guid {guid!r} already exists")

        row.update({k: v for k, v in values.items() if k == "guid" or k in vt_table.columns})
        row["updated_at"] = now
        return dict(row)

    async def delete(self, table: str, tenant: Tenant, row_id: int) -> None:
        get_table(table)
        row = self._rows[table].get(row_id)
        if row is None or not tenant.owns(row):
            raise NotFound(table, row_id)
        del self._rows[table][row_id]

    # Audit and integrity

    async def sync_audit(self, table: str, tenant: Tenant) -> tuple[Optional[datetime], int]:
        stamps = [r["last_synced_at"] for r in self._scoped(table, tenant)
                  if r["last_synced_at"] is not None]
        if not stamps:
            return None, 0
        latest = max(stamps)
        return latest, sum(1 for s in stamps if s == latest)

    async def count_duplicates(self, table: str, tenant: Tenant, column: str) -> int:
        counts: dict = defaultdict(int)
        for row in self._scoped(table, tenant):
            if row.get(column) is not None:
                counts[row[column]] += 1
        return sum(n - 1 for n in counts.values() if n > 1)

    async def count_missing_references(
        self, table: str, tenant: Tenant, column: str, target: str, target_column: str
    ) -> int:
        known = {r.get(target_column) for r in self._scoped(target, tenant)}
        return sum(
            1 for row in self._scoped(table, tenant)
            if row.get(column) is not None and row[column] not in known
        )

    async def initialize_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None
