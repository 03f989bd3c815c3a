"""
Tenant-scoped repository over one VT table.

Every read and write goes through the store with the repository's tenant, so
rows of other tenants can neither be seen nor touched. Writes stamp the
tenant columns and updated_at themselves; callers cannot set id, the tenant
or the audit columns.
"""
from __future__ import annotations
from typing import Any, Mapping, Optional
from loguru import logger
from pydantic import BaseModel

from .clock import Clock, utcnow
from .errors import ValidationError
from .filters import QueryOptions, build_query
from .models import AUDIT_COLUMNS, get_table
from .store import NormalizedStore
from .tenant import TENANT_COLUMNS, Tenant

PROTECTED_COLUMNS = ("id",) + AUDIT_COLUMNS


class PaginatedResponse(BaseModel):
    data: list[dict]
    total: int
    page: int
    limit: Optional[int]
    has_more: bool


class TenantRepository:
    """
    Usage:
        repo = TenantRepository(store, "vt_ledgers", Tenant("C1", "D1"))
        page = await repo.get_all({"parent": "Sundry Debtors"}, QueryOptions(limit=20))
        row = await repo.create({"name": "Cash"})
    """

    def __init__(
        self,
        store: NormalizedStore,
        table: str,
        tenant: Tenant,
        default_page_size: Optional[int] = 50,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.table = get_table(table)
        self.tenant = tenant
        self.default_page_size = default_page_size
        self.clock = clock

    def _prepare(self, data: Mapping[str, Any]) -> dict:
        """Strip protected columns and check the tenant and column names of a payload."""
        if not isinstance(data, Mapping):
            raise ValidationError(f"{self.table.name}: expected a mapping, got {type(data).__name__}")

        for column in TENANT_COLUMNS:
            if column in data and data[column] is not None and str(data[column]) != getattr(self.tenant, column):
                raise ValidationError(
                    f"{self.table.name}: payload {column}={data[column]!r} does not match tenant {self.tenant}"
                )

        values = {}
        for column, value in data.items():
            if column in TENANT_COLUMNS or column in PROTECTED_COLUMNS:
                continue
            if not self.table.has_column(column):
                raise ValidationError(f"{self.table.name} has no column {column!r}")
            values[column] = value
        return values

    async def get_all(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> PaginatedResponse:
        query = build_query(self.table, filters, options, self.default_page_size)
        result = await self.store.query(self.table.name, self.tenant, query)

        limit = query.limit
        page = query.offset // limit + 1 if limit else 1
        return PaginatedResponse(
            data=result.rows,
            total=result.total,
            page=page,
            limit=limit,
            has_more=query.offset + len(result.rows) < result.total,
        )

    async def get_count(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        search_term: Optional[str] = None,
    ) -> int:
        query = build_query(self.table, filters, QueryOptions(search_term=search_term))
        return await self.store.count(self.table.name, self.tenant, query)

    async def get_by_id(self, row_id: int) -> Optional[dict]:
        return await self.store.get(self.table.name, self.tenant, row_id)

    async def create(self, data: Mapping[str, Any]) -> dict:
        row = await self.store.insert(self.table.name, self.tenant, self._prepare(data), now=self.clock())
        logger.debug(f"Created {self.table.name} id={row['id']} for {self.tenant}")
        return row

    async def update(self, row_id: int, data: Mapping[str, Any]) -> dict:
        row = await self.store.update(
            self.table.name, self.tenant, row_id, self._prepare(data), now=self.clock()
        )
        logger.debug(f"Updated {self.table.name} id={row_id} for {self.tenant}")
        return row

    async def delete(self, row_id: int) -> bool:
        """Delete a row of this tenant. Raises NotFound if there is none."""
        await self.store.delete(self.table.name, self.tenant, row_id)
        logger.debug(f"Deleted {self.table.name} id={row_id} for {self.tenant}")
        return True

    async def batch_create(self, rows: list[Mapping[str, Any]]) -> list[dict]:
        """
        Insert rows all-or-nothing.

        Raises:
            ValidationError: a row is malformed (message names its index)
            ConstraintViolation: a guid clashes; row_index names the row
        """
        prepared = []
        for index, data in enumerate(rows):
            try:
                prepared.append(self._prepare(data))
            except ValidationError as e:
                raise ValidationError(f"row {index}: {e}") from e
        if not prepared:
            return []
        created = await self.store.insert_many(self.table.name, self.tenant, prepared, now=self.clock())
        logger.info(f"Batch created {len(created)} {self.table.name} rows for {self.tenant}")
        return created
