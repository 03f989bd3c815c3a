"""
Legacy table -> VT table mapping.

Each entry names a flat export table, the backup copy an export run leaves
behind (bkp_<source>), and the normalized table both of them feed. The mapping
is static configuration: it is validated once when the engine is built and a
lookup miss is a configuration error, never a silently dropped table.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional
from loguru import logger

from .errors import ConfigurationError
from .models import CATALOG, check_identifier

BACKUP_PREFIX = "bkp_"


@dataclass(frozen=True)
class TableMapping:
    source: str
    target: str
    backup: Optional[str] = None

    @classmethod
    def with_backup(cls, source: str, target: str) -> "TableMapping":
        return cls(source=source, target=target, backup=f"{BACKUP_PREFIX}{source}")

    @property
    def legacy_names(self) -> tuple[str, ...]:
        """Backup first: it is the authoritative snapshot once it exists."""
        return (self.backup, self.source) if self.backup else (self.source,)


DEFAULT_MAPPINGS: tuple[TableMapping, ...] = (
    # Masters
    TableMapping.with_backup("mst_company", "vt_companies"),
    TableMapping.with_backup("mst_group", "vt_groups"),
    TableMapping.with_backup("mst_ledger", "vt_ledgers"),
    TableMapping.with_backup("mst_cost_category", "vt_cost_categories"),
    TableMapping.with_backup("mst_cost_centre", "vt_cost_centres"),
    TableMapping.with_backup("mst_stock_group", "vt_stock_groups"),
    TableMapping.with_backup("mst_stock_category", "vt_stock_categories"),
    TableMapping.with_backup("mst_uom", "vt_units"),
    TableMapping.with_backup("mst_stock_item", "vt_stock_items"),
    TableMapping.with_backup("mst_godown", "vt_godowns"),
    TableMapping.with_backup("mst_vouchertype", "vt_voucher_types"),
    TableMapping.with_backup("mst_currency", "vt_currencies"),
    TableMapping.with_backup("mst_employee", "vt_employees"),
    # Transactions
    TableMapping.with_backup("tally_trn_voucher", "vt_vouchers"),
    TableMapping.with_backup("trn_accounting", "vt_ledger_entries"),
    TableMapping.with_backup("trn_batch", "vt_inventory_entries"),
    TableMapping.with_backup("trn_bill", "vt_bill_entries"),
)


def _is_transaction(target: str) -> bool:
    table = CATALOG.get(target)
    return table is None or table.category != "master"


class MappingTable:
    """
    Lookup over a set of TableMapping entries.

    Usage:
        mappings = MappingTable()          # DEFAULT_MAPPINGS
        mappings.validate()                # raises ConfigurationError
        mappings.resolve("bkp_mst_ledger") # -> "vt_ledgers"
    """

    def __init__(self, entries: Iterable[TableMapping] = DEFAULT_MAPPINGS):
        self.entries: tuple[TableMapping, ...] = tuple(entries)
        self._by_legacy: dict[str, str] = {}
        for entry in self.entries:
            for name in entry.legacy_names:
                # Duplicates are reported by validate(); keep the first here
                self._by_legacy.setdefault(name, entry.target)

    def resolve(self, legacy_name: str) -> str:
        """Return the normalized table for a legacy source or backup name."""
        try:
            return self._by_legacy[legacy_name]
        except KeyError:
            raise ConfigurationError(f"No VT mapping for legacy table {legacy_name!r}") from None

    def targets(self) -> list[str]:
        """Normalized tables in sync order: masters first, then transactions."""
        seen: list[str] = []
        for entry in self.entries:
            if entry.target not in seen:
                seen.append(entry.target)
        return sorted(seen, key=_is_transaction)

    def sources_for(self, target: str) -> list[str]:
        """Legacy names feeding target, every backup ahead of every active source."""
        backups = [e.backup for e in self.entries if e.target == target and e.backup]
        sources = [e.source for e in self.entries if e.target == target]
        if not sources:
            raise ConfigurationError(f"No legacy source maps to {target!r}")
        return backups + sources

    def validate(self, known_tables: Optional[Iterable[str]] = None) -> None:
        """
        Check the mapping against the VT catalog.

        Raises:
            ConfigurationError: listing every problem found.
        """
        known = set(known_tables) if known_tables is not None else set(CATALOG)
        problems = []
        if not self.entries:
            problems.append("mapping is empty")

        seen: dict[str, str] = {}
        for entry in self.entries:
            if entry.target not in known:
                problems.append(f"{entry.source} -> {entry.target}: unknown VT table")
            if entry.backup is not None and entry.backup == entry.source:
                problems.append(f"{entry.source}: backup name equals source name")
            for name in entry.legacy_names:
                try:
                    check_identifier(name)
                except ConfigurationError as e:
                    problems.append(str(e))
                if name in seen:
                    problems.append(f"{name} mapped twice ({seen[name]}, {entry.target})")
                seen[name] = entry.target

        if problems:
            for problem in problems:
                logger.error(f"Table mapping: {problem}")
            raise ConfigurationError("Invalid table mapping: " + "; ".join(problems))

        logger.debug(f"Table mapping OK: {len(self.entries)} entries, {len(self.targets())} VT tables")
