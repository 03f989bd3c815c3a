"""
Normalized store contract.

A store persists VT rows. Every method takes the tenant explicitly and must
scope its reads and writes to it; no method may return or touch a row of any
other tenant.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from ..filters import Query
from ..tenant import Tenant


@dataclass
class QueryResult:
    rows: list[dict]
    total: int


class NormalizedStore(Protocol):

    async def has_tenant(self, tenant: Tenant) -> bool: ...

    async def register_tenant(self, tenant: Tenant, name: Optional[str] = None) -> None: ...

    async def get(self, table: str, tenant: Tenant, row_id: int) -> Optional[dict]: ...

    async def get_by_natural_key(self, table: str, tenant: Tenant, guid: str) -> Optional[dict]: ...

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
        """
        Write a row produced by the sync engine.

        With expected_updated_at None the row must not exist yet and is
        inserted. Otherwise the stored row is updated only if its updated_at
        still equals expected_updated_at. Both stamp updated_at and
        last_synced_at with synced_at, and record the legacy row's own
        modification time in legacy_updated_at.

        Raises:
            ConflictError: the row appeared, vanished or changed since it was read.
        """
        ...

    async def query(self, table: str, tenant: Tenant, query: Query) -> QueryResult: ...

    async def count(self, table: str, tenant: Tenant, query: Query) -> int: ...

    async def insert(self, table: str, tenant: Tenant, values: dict, *, now: datetime) -> dict: ...

    async def insert_many(
        self, table: str, tenant: Tenant, rows: list[dict], *, now: datetime
    ) -> list[dict]:
        """Insert all rows atomically. ConstraintViolation.row_index names the failing row."""
        ...

    async def update(
        self, table: str, tenant: Tenant, row_id: int, values: dict, *, now: datetime
    ) -> dict: ...

    async def delete(self, table: str, tenant: Tenant, row_id: int) -> None: ...

    async def sync_audit(self, table: str, tenant: Tenant) -> tuple[Optional[datetime], int]:
        """Latest last_synced_at of the table for the tenant, and how many rows carry it."""
        ...

    async def count_duplicates(self, table: str, tenant: Tenant, column: str) -> int: ...

    async def count_missing_references(
        self, table: str, tenant: Tenant, column: str, target: str, target_column: str
    ) -> int: ...

    async def initialize_schema(self) -> None: ...

    async def close(self) -> None: ...
