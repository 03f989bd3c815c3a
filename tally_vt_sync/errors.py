"""
Exception types for the VT sync engine and data-access layer.

Row- and source-level errors are recovered inside a sync run and folded into
the run's error counter. Configuration and tenant resolution errors always
propagate to the caller, as do errors raised by repository operations.
"""
from __future__ import annotations
from typing import Optional


class VtSyncError(Exception):
    """Base class for all errors raised by tally_vt_sync."""
    pass


class ConfigurationError(VtSyncError):
    """Raised when the table mapping or settings are unusable. Aborts before any I/O."""
    pass


class TenantResolutionError(VtSyncError):
    """Raised when a (company_id, division_id) pair cannot be resolved."""
    pass


class SourceUnavailable(VtSyncError):
    """Raised when a legacy source cannot be read (connectivity, auth, timeout)."""

    def __init__(self, table: str, message: str):
        super().__init__(f"{table}: {message}")
        self.table = table


class ValidationError(VtSyncError):
    """Raised for malformed legacy rows and invalid repository input."""
    pass


class ConflictError(VtSyncError):
    """Raised when a sync candidate would overwrite a fresher local edit."""

    def __init__(self, table: str, guid: Optional[str], message: str):
        super().__init__(f"{table}[{guid}]: {message}")
        self.table = table
        self.guid = guid


class ConstraintViolation(VtSyncError):
    """Raised on a uniqueness clash. row_index points into a batch when known."""

    def __init__(self, message: str, row_index: Optional[int] = None):
        if row_index is not None:
            message = f"row {row_index}: {message}"
        super().__init__(message)
        self.row_index = row_index


class StoreError(VtSyncError):
    """Raised when the normalized store fails for reasons other than the above."""
    pass


class NotFound(VtSyncError):
    """Raised when an id-scoped mutation targets an absent or foreign-tenant row."""

    def __init__(self, table: str, row_id):
        super().__init__(f"{table}: no row with id {row_id}")
        self.table = table
        self.row_id = row_id
