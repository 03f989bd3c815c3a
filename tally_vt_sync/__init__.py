"""
Tally VT Sync - Tenant-scoped normalized schema fed from the Tally export tables.

This package copies the flat tables a Tally export run writes (mst_*, trn_*,
tally_trn_voucher and their bkp_ backups) into the normalized "VT" tables,
keyed by company and division, and gives the application tenant-scoped
repositories and entity services over them.

Key Features:
- Per-tenant sync with backup-preferring dedup by guid
- Idempotent re-runs; rows edited locally are reported as conflicts, never overwritten
- Partial failures counted per row and per source, never fatal to the run
- Concurrent calls for one tenant share the run in flight
- Filtered, searchable, paginated repositories with strict tenant isolation
- Integrity validation with a health score

Usage:
    # Sync one tenant
    python -m tally_vt_sync --company C1 --division D1

    # Create the schema, register the tenant, sync and validate
    python -m tally_vt_sync --company C1 --division D1 --init-schema --register-tenant --validate

    # Sync specific tables
    python -m tally_vt_sync --company C1 --division D1 --tables vt_ledgers vt_vouchers
"""

__version__ = "1.0.0"
__author__ = "Intelayer"

from .config import VtSyncConfig
from .errors import (
    ConfigurationError,
    ConflictError,
    ConstraintViolation,
    NotFound,
    SourceUnavailable,
    StoreError,
    TenantResolutionError,
    ValidationError,
    VtSyncError,
)
from .filters import Condition, QueryOptions
from .mapping import DEFAULT_MAPPINGS, MappingTable, TableMapping
from .repository import PaginatedResponse, TenantRepository
from .services import ENTITIES, EntityService, EntityStats, get_service
from .status import SyncRunResult, SyncStatusStore, TableSyncResult, derive_from_store
from .sync import SyncEngine, build_engine, run_sync
from .tenant import Tenant, resolve_tenant
from .validation import ValidationReport, validate_tenant

__all__ = [
    "VtSyncConfig",
    "VtSyncError",
    "ConfigurationError",
    "ConflictError",
    "ConstraintViolation",
    "NotFound",
    "SourceUnavailable",
    "StoreError",
    "TenantResolutionError",
    "ValidationError",
    "Condition",
    "QueryOptions",
    "DEFAULT_MAPPINGS",
    "MappingTable",
    "TableMapping",
    "PaginatedResponse",
    "TenantRepository",
    "ENTITIES",
    "EntityService",
    "EntityStats",
    "get_service",
    "SyncRunResult",
    "SyncStatusStore",
    "TableSyncResult",
    "derive_from_store",
    "SyncEngine",
    "build_engine",
    "run_sync",
    "Tenant",
    "resolve_tenant",
    "ValidationReport",
    "validate_tenant",
    "__version__",
]
