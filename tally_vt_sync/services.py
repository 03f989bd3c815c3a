"""
Entity services over the tenant-scoped repositories.

One service per VT entity adds the lookups the application needs on top of
plain CRUD: filter by name, free-text search, name availability and simple
stats.
"""
from __future__ import annotations
from datetime import timedelta
from typing import Any, Mapping, Optional
from pydantic import BaseModel

from .clock import Clock, utcnow
from .errors import ConfigurationError
from .filters import Condition, QueryOptions
from .repository import PaginatedResponse, TenantRepository
from .store import NormalizedStore
from .tenant import Tenant

RECENT_DAYS = 30

# Entity key -> VT table
ENTITIES: dict[str, str] = {
    "company": "vt_companies",
    "group": "vt_groups",
    "ledger": "vt_ledgers",
    "cost_category": "vt_cost_categories",
    "cost_centre": "vt_cost_centres",
    "stock_group": "vt_stock_groups",
    "stock_category": "vt_stock_categories",
    "stock_item": "vt_stock_items",
    "unit": "vt_units",
    "godown": "vt_godowns",
    "voucher_type": "vt_voucher_types",
    "currency": "vt_currencies",
    "employee": "vt_employees",
    "voucher": "vt_vouchers",
    "ledger_entries": "vt_ledger_entries",
    "inventory_entries": "vt_inventory_entries",
    "bill_entries": "vt_bill_entries",
}


class EntityStats(BaseModel):
    total: int
    recently_updated: int


class EntityService:
    """
    Usage:
        service = get_service("ledger", tenant, store)
        page = await service.list(search_term="cash")
        if await service.is_name_available("Petty Cash"):
            await service.create({"name": "Petty Cash", "parent": "Cash-in-Hand"})
    """

    def __init__(self, repository: TenantRepository, clock: Clock = utcnow):
        self.repository = repository
        self.table = repository.table
        self.clock = clock

    @property
    def name_field(self) -> str:
        return self.table.name_field or "id"

    def _name_filter(self, name: str) -> dict:
        # Condition bypasses "op.value" parsing, names may contain dots
        return {self.name_field: Condition(self.name_field, "eq", name)}

    async def list(
        self,
        name: Optional[str] = None,
        search_term: Optional[str] = None,
        options: Optional[QueryOptions] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> PaginatedResponse:
        """List rows, optionally narrowed to an exact name and/or a search term."""
        filters = dict(filters or {})
        if name is not None:
            filters.update(self._name_filter(name))
        if search_term is not None:
            options = (options or QueryOptions()).model_copy(update={"search_term": search_term})
        return await self.repository.get_all(filters, options)

    async def get_by_name(self, name: str) -> Optional[dict]:
        page = await self.repository.get_all(self._name_filter(name), QueryOptions(limit=1))
        return page.data[0] if page.data else None

    async def is_name_available(self, name: str, exclude_id: Optional[int] = None) -> bool:
        filters = self._name_filter(name)
        if exclude_id is not None:
            filters["id"] = Condition("id", "neq", exclude_id)
        return await self.repository.get_count(filters) == 0

    async def get_stats(self) -> EntityStats:
        since = self.clock() - timedelta(days=RECENT_DAYS)
        total = await self.repository.get_count()
        recent = await self.repository.get_count({"updated_at": Condition("updated_at", "gte", since)})
        return EntityStats(total=total, recently_updated=recent)

    async def get_by_id(self, row_id: int) -> Optional[dict]:
        return await self.repository.get_by_id(row_id)

    async def create(self, data: Mapping[str, Any]) -> dict:
        return await self.repository.create(data)

    async def update(self, row_id: int, data: Mapping[str, Any]) -> dict:
        return await self.repository.update(row_id, data)

    async def delete(self, row_id: int) -> bool:
        return await self.repository.delete(row_id)

    async def batch_create(self, rows: list[Mapping[str, Any]]) -> list[dict]:
        return await self.repository.batch_create(rows)


def get_service(
    entity: str,
    tenant: Tenant,
    store: NormalizedStore,
    default_page_size: Optional[int] = 50,
    clock: Clock = utcnow,
) -> EntityService:
    """Build the service for an entity key from ENTITIES."""
    try:
        table = ENTITIES[entity]
    except KeyError:
        raise ConfigurationError(
            f"Unknown entity: {entity}. Valid: {', '.join(sorted(ENTITIES))}"
        ) from None
    repository = TenantRepository(store, table, tenant, default_page_size=default_page_size, clock=clock)
    return EntityService(repository, clock=clock)
