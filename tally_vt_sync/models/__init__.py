"""
VT table catalog.

Describes every normalized table: its attribute columns and their kinds, the
legacy column each one is read from, required fields, the name/search fields
used by the entity services, and the references checked by validation.

The PostgreSQL DDL is rendered from schema.sql.j2 using this catalog.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from jinja2 import Template

from ..coerce import coerce, parse_timestamp, parse_text
from ..errors import ConfigurationError, ValidationError

SCHEMA_TEMPLATE = Path(__file__).parent / "schema.sql.j2"

# Columns present on every VT table, in addition to the attributes
KEY_COLUMNS = ("id", "company_id", "division_id", "guid")
AUDIT_COLUMNS = ("created_at", "updated_at", "last_synced_at", "legacy_updated_at")
BASE_COLUMNS = KEY_COLUMNS + AUDIT_COLUMNS

SQL_TYPES = {
    "text": "TEXT",
    "float": "DOUBLE PRECISION",
    "int": "BIGINT",
    "bool": "BOOLEAN",
    "date": "DATE",
    "timestamp": "TIMESTAMPTZ",
}

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def check_identifier(name: str) -> str:
    """Reject anything that is not a plain lower-case SQL identifier."""
    if not name or not _IDENTIFIER.match(name):
        raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True)
class Reference:
    """column must match target_column of some row in target (same tenant)."""

    column: str
    target: str
    target_column: str = "name"


@dataclass(frozen=True)
class VtTable:
    name: str
    columns: dict[str, str]
    category: str = "master"
    # normalized column -> legacy column, when the names differ
    renames: dict[str, str] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    name_field: Optional[str] = "name"
    search_fields: tuple[str, ...] = ("name",)
    references: tuple[Reference, ...] = ()
    # legacy column carrying the row's modification time
    timestamp_column: str = "updated_at"

    @property
    def attribute_columns(self) -> tuple[str, ...]:
        return tuple(self.columns)

    @property
    def all_columns(self) -> tuple[str, ...]:
        return KEY_COLUMNS + self.attribute_columns + AUDIT_COLUMNS

    def has_column(self, column: str) -> bool:
        return column in BASE_COLUMNS or column in self.columns

    def legacy_column(self, column: str) -> str:
        return self.renames.get(column, column)

    def map_row(self, raw: dict) -> tuple[str, dict[str, Any], Optional[datetime]]:
        """
        Map one legacy row onto this table's shape.

        Returns:
            (guid, attribute values, legacy modification timestamp)

        Raises:
            ValidationError: guid or another required field is missing.
        """
        guid = parse_text(raw.get("guid"))
        if guid is None:
            raise ValidationError(f"{self.name}: legacy row has no guid")

        values = {}
        for column, kind in self.columns.items():
            values[column] = coerce(raw.get(self.legacy_column(column)), kind)

        missing = [c for c in self.required if values.get(c) is None]
        if missing:
            raise ValidationError(
                f"{self.name}[{guid}]: missing required field(s) {', '.join(missing)}"
            )

        return guid, values, parse_timestamp(raw.get(self.timestamp_column))


def _master(name: str, columns: dict[str, str], **kwargs) -> VtTable:
    kwargs.setdefault("required", ("name",))
    return VtTable(name=name, columns={"name": "text", **columns}, **kwargs)


CATALOG: dict[str, VtTable] = {
    t.name: t
    for t in (
        _master(
            "vt_companies",
            {
                "mailing_name": "text",
                "address": "text",
                "state": "text",
                "gstin": "text",
                "books_from": "date",
                "starting_from": "date",
            },
            search_fields=("name", "mailing_name", "gstin"),
        ),
        _master(
            "vt_groups",
            {
                "parent": "text",
                "primary_group": "text",
                "is_revenue": "bool",
                "is_deemed_positive": "bool",
                "affects_gross_profit": "bool",
                "sort_position": "int",
            },
            search_fields=("name", "parent"),
        ),
        _master(
            "vt_ledgers",
            {
                "parent": "text",
                "alias": "text",
                "opening_balance": "float",
                "closing_balance": "float",
                "mailing_name": "text",
                "mailing_address": "text",
                "email": "text",
                "gstn": "text",
                "pan": "text",
                "credit_limit": "float",
                "credit_days": "int",
                "is_revenue": "bool",
                "is_deemed_positive": "bool",
            },
            renames={"pan": "it_pan"},
            search_fields=("name", "alias", "parent", "gstn"),
            references=(Reference("parent", "vt_groups"),),
        ),
        _master(
            "vt_cost_categories",
            {"allocate_revenue": "bool", "allocate_non_revenue": "bool"},
        ),
        _master(
            "vt_cost_centres",
            {"parent": "text", "category": "text"},
            search_fields=("name", "parent", "category"),
        ),
        _master("vt_stock_groups", {"parent": "text", "should_quantities_add": "bool"}),
        _master("vt_stock_categories", {"parent": "text"}),
        _master(
            "vt_stock_items",
            {
                "parent": "text",
                "category": "text",
                "alias": "text",
                "uom": "text",
                "gst_hsn_code": "text",
                "opening_balance": "float",
                "opening_rate": "float",
                "opening_value": "float",
            },
            search_fields=("name", "alias", "parent", "gst_hsn_code"),
            references=(
                Reference("parent", "vt_stock_groups"),
                Reference("uom", "vt_units"),
            ),
        ),
        _master(
            "vt_units",
            {
                "formal_name": "text",
                "is_simple_unit": "bool",
                "base_units": "text",
                "additional_units": "text",
                "conversion": "float",
            },
            search_fields=("name", "formal_name"),
        ),
        _master("vt_godowns", {"parent": "text", "address": "text"}),
        _master(
            "vt_voucher_types",
            {
                "parent": "text",
                "numbering_method": "text",
                "is_deemed_positive": "bool",
                "affects_stock": "bool",
            },
        ),
        _master(
            "vt_currencies",
            {"formal_name": "text", "iso_code": "text", "decimal_places": "int"},
            search_fields=("name", "formal_name", "iso_code"),
        ),
        _master(
            "vt_employees",
            {
                "parent": "text",
                "employee_number": "text",
                "designation": "text",
                "date_of_joining": "date",
            },
            search_fields=("name", "employee_number", "designation"),
        ),
        VtTable(
            name="vt_vouchers",
            category="transaction",
            columns={
                "voucher_number": "text",
                "voucher_type": "text",
                "voucher_date": "date",
                "reference": "text",
                "narration": "text",
                "party_name": "text",
                "amount": "float",
                "is_cancelled": "bool",
                "is_optional": "bool",
            },
            renames={"voucher_date": "date", "party_name": "party_ledger_name"},
            required=("voucher_type", "voucher_date"),
            name_field="voucher_number",
            search_fields=("voucher_number", "party_name", "narration", "reference"),
            references=(Reference("voucher_type", "vt_voucher_types"),),
        ),
        VtTable(
            name="vt_ledger_entries",
            category="transaction",
            columns={
                "voucher_guid": "text",
                "ledger": "text",
                "amount": "float",
                "is_party_ledger": "bool",
                "is_deemed_positive": "bool",
                "cost_centre": "text",
            },
            required=("voucher_guid", "ledger"),
            name_field="ledger",
            search_fields=("ledger", "cost_centre"),
            references=(
                Reference("voucher_guid", "vt_vouchers", "guid"),
                Reference("ledger", "vt_ledgers"),
            ),
        ),
        VtTable(
            name="vt_inventory_entries",
            category="transaction",
            columns={
                "voucher_guid": "text",
                "item": "text",
                "quantity": "float",
                "rate": "float",
                "amount": "float",
                "godown": "text",
                "tracking_number": "text",
            },
            required=("voucher_guid", "item"),
            name_field="item",
            search_fields=("item", "godown", "tracking_number"),
            references=(
                Reference("voucher_guid", "vt_vouchers", "guid"),
                Reference("item", "vt_stock_items"),
            ),
        ),
        VtTable(
            name="vt_bill_entries",
            category="transaction",
            columns={
                "voucher_guid": "text",
                "ledger": "text",
                "name": "text",
                "amount": "float",
                "billtype": "text",
            },
            required=("voucher_guid",),
            search_fields=("name", "ledger"),
            references=(Reference("voucher_guid", "vt_vouchers", "guid"),),
        ),
    )
}


def get_table(name: str) -> VtTable:
    """Look up a catalog table, raising ConfigurationError for unknown names."""
    try:
        return CATALOG[name]
    except KeyError:
        raise ConfigurationError(f"Unknown VT table: {name}") from None


def render_schema_sql(schema: str = "vt", tables: Optional[list[VtTable]] = None) -> str:
    """Render the DDL for the VT schema (idempotent CREATE ... IF NOT EXISTS)."""
    tables = tables if tables is not None else list(CATALOG.values())
    check_identifier(schema)
    for table in tables:
        check_identifier(table.name)
        for column in table.columns:
            check_identifier(column)

    template = Template(SCHEMA_TEMPLATE.read_text(encoding="utf-8"))
    return template.render(schema=schema, tables=tables, sql_types=SQL_TYPES)
