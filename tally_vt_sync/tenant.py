"""
Tenant context.

Every normalized row belongs to exactly one (company_id, division_id) pair.
The pair travels through the engine, repositories and stores as a Tenant.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol
from loguru import logger

from .errors import TenantResolutionError

TENANT_COLUMNS = ("company_id", "division_id")


@dataclass(frozen=True)
class Tenant:
    company_id: str
    division_id: str

    @classmethod
    def from_ids(cls, company_id, division_id) -> "Tenant":
        """Build a tenant, rejecting blank ids."""
        company = str(company_id).strip() if company_id is not None else ""
        division = str(division_id).strip() if division_id is not None else ""
        if not company or not division:
            raise TenantResolutionError(
                f"Both company_id and division_id are required "
                f"(got company_id={company_id!r}, division_id={division_id!r})"
            )
        return cls(company, division)

    def as_filter(self) -> dict:
        return {"company_id": self.company_id, "division_id": self.division_id}

    def owns(self, row: dict) -> bool:
        """True when row carries this tenant's scope columns."""
        return (
            str(row.get("company_id")) == self.company_id
            and str(row.get("division_id")) == self.division_id
        )

    def __str__(self) -> str:
        return f"{self.company_id}/{self.division_id}"


class TenantDirectory(Protocol):
    """Anything that can tell whether a tenant exists (the normalized store does)."""

    async def has_tenant(self, tenant: Tenant) -> bool: ...


async def resolve_tenant(
    company_id,
    division_id,
    directory: Optional[TenantDirectory] = None,
    timeout: Optional[float] = None,
) -> Tenant:
    """
    Resolve and verify a tenant.

    Raises:
        TenantResolutionError: ids are blank, the directory does not know the
            tenant, or the directory cannot be reached in time.
    """
    tenant = Tenant.from_ids(company_id, division_id)
    if directory is None:
        return tenant

    try:
        known = await asyncio.wait_for(directory.has_tenant(tenant), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TenantResolutionError(f"Timed out resolving tenant {tenant}") from e
    except TenantResolutionError:
        raise
    except Exception as e:
        logger.error(f"Tenant lookup failed for {tenant}: {e}")
        raise TenantResolutionError(f"Cannot resolve tenant {tenant}: {e}") from e

    if not known:
        raise TenantResolutionError(f"Unknown tenant {tenant}")
    return tenant
