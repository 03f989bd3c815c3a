"""In-process legacy source over lists of dict rows."""
from __future__ import annotations
from typing import Optional

from ..tenant import Tenant
from .base import LegacyBatch


class MemoryLegacySource:
    """
    Usage:
        source = MemoryLegacySource({
            "tally_trn_voucher": [{"guid": "V1", "company_id": "C1", ...}],
        })

    Tables absent from the mapping behave like exports that were never taken.
    """

    def __init__(self, tables: Optional[dict[str, list[dict]]] = None):
        self.tables: dict[str, list[dict]] = {k: list(v) for k, v in (tables or {}).items()}
        self.fetches: list[tuple[str, Tenant, Optional[str]]] = []

    async def has_table(self, table: str) -> bool:
        return table in self.tables

    async def fetch_rows(
        self,
        table: str,
        tenant: Tenant,
        cursor: Optional[str] = None,
        batch_size: int = 1000,
    ) -> LegacyBatch:
        self.fetches.append((table, tenant, cursor))
        rows = [dict(r) for r in self.tables.get(table, []) if tenant.owns(r)]
        offset = int(cursor or 0)
        page = rows[offset:offset + batch_size]
        more = offset + batch_size < len(rows)
        return LegacyBatch(rows=page, next_cursor=str(offset + batch_size) if more else None)

    async def close(self) -> None:
        return None
