"""
Legacy accessor contract.

A legacy source reads the flat export tables (and their bkp_ copies) a Tally
export run leaves behind. Rows come back as plain dicts keyed by legacy column
name, restricted to one tenant and paged with an opaque cursor.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ..tenant import Tenant


@dataclass
class LegacyBatch:
    rows: list[dict] = field(default_factory=list)
    # None when there is nothing more to read
    next_cursor: Optional[str] = None


class LegacySource(Protocol):

    async def has_table(self, table: str) -> bool:
        """False for a table the export has not produced (e.g. no backup yet)."""
        ...

    async def fetch_rows(
        self,
        table: str,
        tenant: Tenant,
        cursor: Optional[str] = None,
        batch_size: int = 1000,
    ) -> LegacyBatch:
        """
        Read the next batch of table's rows for tenant.

        Raises:
            SourceUnavailable: the table cannot be read.
        """
        ...

    async def close(self) -> None: ...
