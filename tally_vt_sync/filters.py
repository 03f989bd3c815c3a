"""
Filter predicates, search and pagination options for VT queries.

Filters are given as a mapping of field -> predicate, where a predicate is:
- a plain value (exact match)
- None (IS NULL)
- a list/tuple/set (IN)
- an operator string "<op>.<value>", e.g. {"updated_at": "gte.2024-04-01T00:00:00Z"}
- a Condition

Every field is checked against the table catalog. Tenant columns may not be
filtered on: the tenant predicate is always applied by the store.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from pydantic import BaseModel, Field

from .coerce import coerce
from .errors import ValidationError
from .models import VtTable
from .tenant import TENANT_COLUMNS

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is")

BASE_KINDS = {
    "id": "int",
    "company_id": "text",
    "division_id": "text",
    "guid": "text",
    "created_at": "timestamp",
    "updated_at": "timestamp",
    "last_synced_at": "timestamp",
    "legacy_updated_at": "timestamp",
}


def column_kind(table: VtTable, column: str) -> str:
    if column in BASE_KINDS:
        return BASE_KINDS[column]
    return table.columns[column]


def like_to_regex(pattern: str, ignore_case: bool = False) -> re.Pattern:
    """Translate a SQL LIKE pattern (% and _ wildcards, backslash escapes)."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    flags = (re.IGNORECASE | re.DOTALL) if ignore_case else re.DOTALL
    return re.compile("^" + "".join(out) + "$", flags)


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None

    def matches(self, row: dict) -> bool:
        """Evaluate against a row with SQL NULL semantics."""
        actual = row.get(self.field)
        if self.op == "is":
            return actual is None if self.value is None else actual is self.value
        if actual is None:
            return False
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "gt":
            return actual > self.value
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lt":
            return actual < self.value
        if self.op == "lte":
            return actual <= self.value
        if self.op == "in":
            return actual in self.value
        if self.op in ("like", "ilike"):
            return bool(like_to_regex(self.value, self.op == "ilike").match(str(actual)))
        raise ValidationError(f"Unsupported operator: {self.op}")


def _split_operator(raw: str) -> tuple[str, str]:
    prefix, sep, rest = raw.partition(".")
    if sep and prefix in OPERATORS:
        return prefix, rest
    return "eq", raw


def _coerce_value(table: VtTable, column: str, op: str, value: Any) -> Any:
    kind = column_kind(table, column)
    if op in ("like", "ilike"):
        return str(value)
    if op == "in":
        if isinstance(value, str):
            value = [v.strip() for v in value.strip("()").split(",") if v.strip()]
        coerced = tuple(coerce(v, kind) for v in value)
        if any(v is None for v in coerced):
            raise ValidationError(f"Invalid value in IN list for {column}: {value!r}")
        return coerced
    if op == "is":
        if value is None or (isinstance(value, str) and value.lower() == "null"):
            return None
        flag = coerce(value, "bool")
        if flag is None:
            raise ValidationError(f"IS expects null/true/false for {column}, got {value!r}")
        return flag
    coerced = coerce(value, kind)
    if coerced is None:
        raise ValidationError(f"Invalid {kind} value for {column}: {value!r}")
    return coerced


def parse_condition(table: VtTable, column: str, predicate: Any) -> Condition:
    if column in TENANT_COLUMNS:
        raise ValidationError(f"{column} cannot be filtered on: tenant scope is implicit")
    if not table.has_column(column):
        raise ValidationError(f"{table.name} has no column {column!r}")

    if isinstance(predicate, Condition):
        op, value = predicate.op, predicate.value
    elif predicate is None:
        op, value = "is", None
    elif isinstance(predicate, (list, tuple, set, frozenset)):
        op, value = "in", list(predicate)
    elif isinstance(predicate, str):
        op, value = _split_operator(predicate)
    else:
        op, value = "eq", predicate

    if op not in OPERATORS:
        raise ValidationError(f"Unsupported operator: {op}")
    return Condition(column, op, _coerce_value(table, column, op, value))


def parse_filters(table: VtTable, filters: Optional[Mapping[str, Any]]) -> list[Condition]:
    """Parse a filter mapping into validated conditions (ANDed together)."""
    if not filters:
        return []
    return [parse_condition(table, column, predicate) for column, predicate in filters.items()]


class QueryOptions(BaseModel):
    """Pagination, search and ordering for Repository.get_all."""

    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    search_term: Optional[str] = None
    search_fields: Optional[list[str]] = None
    order_by: Optional[str] = None
    ascending: bool = True


@dataclass
class Query:
    """A validated query against one VT table (tenant scope applied by the store)."""

    conditions: list[Condition] = field(default_factory=list)
    search_term: Optional[str] = None
    search_fields: tuple[str, ...] = ()
    order_by: Optional[str] = None
    ascending: bool = True
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, row: dict) -> bool:
        if not all(c.matches(row) for c in self.conditions):
            return False
        if self.search_term:
            needle = self.search_term.lower()
            return any(
                row.get(f) is not None and needle in str(row.get(f)).lower()
                for f in self.search_fields
            )
        return True


def build_query(
    table: VtTable,
    filters: Optional[Mapping[str, Any]] = None,
    options: Optional[QueryOptions] = None,
    default_limit: Optional[int] = None,
) -> Query:
    """Validate filters and options against the table catalog."""
    options = options or QueryOptions()

    search_term = options.search_term.strip() if options.search_term else None
    search_fields = tuple(options.search_fields or table.search_fields)
    for f in search_fields:
        if not table.has_column(f):
            raise ValidationError(f"{table.name} has no search field {f!r}")

    if options.order_by is not None and not table.has_column(options.order_by):
        raise ValidationError(f"{table.name} has no column {options.order_by!r} to order by")

    return Query(
        conditions=parse_filters(table, filters),
        search_term=search_term or None,
        search_fields=search_fields,
        order_by=options.order_by,
        ascending=options.ascending,
        limit=options.limit if options.limit is not None else default_limit,
        offset=options.offset,
    )
