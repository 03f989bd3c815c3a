"""
PostgreSQL normalized store.

Provides connection management and the VT read/write operations on top of
psycopg 3's async API. Identifiers are always composed with psycopg.sql and
checked against the catalog; values are always passed as parameters.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from loguru import logger

from ..config import VtSyncConfig
from ..errors import ConflictError, ConstraintViolation, NotFound, StoreError
from ..filters import Query, escape_like
from ..models import VtTable, check_identifier, get_table, render_schema_sql
from ..tenant import Tenant
from .base import QueryResult

SQL_OPERATORS = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
    "ilike": "ILIKE",
}


async def get_connection(config: VtSyncConfig, autocommit: bool = True) -> psycopg.AsyncConnection:
    """Open an async connection returning rows as dicts."""
    return await psycopg.AsyncConnection.connect(
        config.db_url, autocommit=autocommit, row_factory=dict_row
    )


class PostgresStore:
    """
    VT rows in PostgreSQL.

    Usage:
        async with PostgresStore(config) as store:
            await store.initialize_schema()
            row = await store.get("vt_ledgers", tenant, 42)
    """

    def __init__(self, config: Optional[VtSyncConfig] = None):
        self.config = config or VtSyncConfig.from_env()
        self.schema = check_identifier(self.config.vt_schema)
        self._conn: Optional[psycopg.AsyncConnection] = None
        self._connect_lock = asyncio.Lock()

    async def connection(self) -> psycopg.AsyncConnection:
        """Get or create the shared autocommit connection."""
        async with self._connect_lock:
            if self._conn is None or self._conn.closed:
                try:
                    self._conn = await get_connection(self.config)
                except psycopg.Error as e:
                    raise StoreError(f"Cannot connect to VT database: {e}") from e
            return self._conn

    async def close(self) -> None:
        """Close database connection."""
        if self._conn is not None and not self._conn.closed:
            await self._conn.close()
        self._conn = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[psycopg.AsyncCursor]:
        conn = await self.connection()
        try:
            async with conn.cursor() as cur:
                yield cur
        except psycopg.errors.UniqueViolation as e:
            raise ConstraintViolation(str(e).strip()) from e
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    # SQL composition

    def _table(self, table: VtTable) -> sql.Identifier:
        return sql.Identifier(self.schema, table.name)

    @staticmethod
    def _tenant_clause() -> sql.SQL:
        return sql.SQL("company_id = %s AND division_id = %s")

    def _where(self, table: VtTable, tenant: Tenant, query: Query) -> tuple[sql.Composable, list]:
        parts: list[sql.Composable] = [self._tenant_clause()]
        params: list = [tenant.company_id, tenant.division_id]

        for cond in query.conditions:
            column = sql.Identifier(cond.field)
            if cond.op == "is":
                if cond.value is None:
                    parts.append(sql.SQL("{} IS NULL").format(column))
                else:
                    parts.append(sql.SQL("{} IS {}").format(
                        column, sql.SQL("TRUE" if cond.value else "FALSE")))
            elif cond.op == "in":
                parts.append(sql.SQL("{} = ANY(%s)").format(column))
                params.append(list(cond.value))
            else:
                parts.append(sql.SQL("{} {} %s").format(column, sql.SQL(SQL_OPERATORS[cond.op])))
                params.append(cond.value)

        if query.search_term:
            pattern = f"%{escape_like(query.search_term)}%"
            alternatives = [
                sql.SQL("{}::text ILIKE %s").format(sql.Identifier(f)) for f in query.search_fields
            ]
            parts.append(sql.SQL("({})").format(sql.SQL(" OR ").join(alternatives)))
            params.extend([pattern] * len(alternatives))

        return sql.SQL(" AND ").join(parts), params

    def _insert_statement(self, table: VtTable, columns: list[str]) -> sql.Composed:
        return sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )

    @staticmethod
    def _writable(table: VtTable, values: dict) -> dict:
        return {k: v for k, v in values.items() if k == "guid" or k in table.columns}

    # Tenants

    async def has_tenant(self, tenant: Tenant) -> bool:
        stmt = sql.SQL("SELECT 1 AS present FROM {} WHERE {}").format(
            sql.Identifier(self.schema, "vt_tenants"), self._tenant_clause())
        async with self._cursor() as cur:
            await cur.execute(stmt, (tenant.company_id, tenant.division_id))
            return await cur.fetchone() is not None

    async def register_tenant(self, tenant: Tenant, name: Optional[str] = None) -> None:
        stmt = sql.SQL(
            "INSERT INTO {} (company_id, division_id, name) VALUES (%s, %s, %s) "
            "ON CONFLICT (company_id, division_id) DO NOTHING"
        ).format(sql.Identifier(self.schema, "vt_tenants"))
        async with self._cursor() as cur:
            await cur.execute(stmt, (tenant.company_id, tenant.division_id, name))
        logger.info(f"Registered tenant {tenant}")

    # Reads

    async def get(self, table: str, tenant: Tenant, row_id: int) -> Optional[dict]:
        vt_table = get_table(table)
        stmt = sql.SQL("SELECT * FROM {} WHERE id = %s AND {}").format(
            self._table(vt_table), self._tenant_clause())
        async with self._cursor() as cur:
            await cur.execute(stmt, (row_id, tenant.company_id, tenant.division_id))
            return await cur.fetchone()

    async def get_by_natural_key(self, table: str, tenant: Tenant, guid: str) -> Optional[dict]:
        vt_table = get_table(table)
        stmt = sql.SQL("SELECT * FROM {} WHERE guid = %s AND {}").format(
            self._table(vt_table), self._tenant_clause())
        async with self._cursor() as cur:
            await cur.execute(stmt, (guid, tenant.company_id, tenant.division_id))
            return await cur.fetchone()

    async def count(self, table: str, tenant: Tenant, query: Query) -> int:
        vt_table = get_table(table)
        where, params = self._where(vt_table, tenant, query)
        stmt = sql.SQL("SELECT COUNT(*) AS cnt FROM {} WHERE {}").format(
            self._table(vt_table), where)
        async with self._cursor() as cur:
            await cur.execute(stmt, params)
            result = await cur.fetchone()
            return result["cnt"] if result else 0

    async def query(self, table: str, tenant: Tenant, query: Query) -> QueryResult:
        vt_table = get_table(table)
        where, params = self._where(vt_table, tenant, query)

        order = [sql.Identifier("id")]
        if query.order_by and query.order_by != "id":
            direction = sql.SQL("ASC" if query.ascending else "DESC")
            order.insert(0, sql.SQL("{} {}").format(sql.Identifier(query.order_by), direction))
        elif query.order_by == "id" and not query.ascending:
            order = [sql.SQL("id DESC")]

        stmt = sql.SQL("SELECT * FROM {} WHERE {} ORDER BY {}").format(
            self._table(vt_table), where, sql.SQL(", ").join(order))
        page_params = list(params)
        if query.limit is not None:
            stmt += sql.SQL(" LIMIT %s")
            page_params.append(query.limit)
        if query.offset:
            stmt += sql.SQL(" OFFSET %s")
            page_params.append(query.offset)

        total = await self.count(table, tenant, query)
        async with self._cursor() as cur:
            await cur.execute(stmt, page_params)
            rows = await cur.fetchall()
        return QueryResult(rows=rows, total=total)

    # Sync writes

    async def upsert(
        self,
        table: str,
        tenant: Tenant,
        guid: str,
        values: dict,
        *,
        synced_at: datetime,
        expected_updated_at: Optional[datetime] = None,
        legacy_updated_at: Optional[datetime] = None,
    ) -> dict:
        vt_table = get_table(table)
        attributes = {k: v for k, v in values.items() if k in vt_table.columns}

        if expected_updated_at is None:
            columns = ["company_id", "division_id", "guid", *attributes,
                       "created_at", "updated_at", "last_synced_at", "legacy_updated_at"]
            params = [tenant.company_id, tenant.division_id, guid, *attributes.values(),
                      synced_at, synced_at, synced_at, legacy_updated_at]
            try:
                async with self._cursor() as cur:
                    await cur.execute(self._insert_statement(vt_table, columns), params)
                    return await cur.fetchone()
            except ConstraintViolation as e:
                raise ConflictError(table, guid, "row was created concurrently") from e

        assignments = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in attributes]
        assignments += [sql.SQL("updated_at = %s"), sql.SQL("last_synced_at = %s"),
                        sql.SQL("legacy_updated_at = %s")]
        stmt = sql.SQL(
            "UPDATE {} SET {} WHERE guid = %s AND updated_at = %s AND {} RETURNING *"
        ).format(self._table(vt_table), sql.SQL(", ").join(assignments), self._tenant_clause())
        params = [*attributes.values(), synced_at, synced_at, legacy_updated_at,
                  guid, expected_updated_at, tenant.company_id, tenant.division_id]
        async with self._cursor() as cur:
            await cur.execute(stmt, params)
            row = await cur.fetchone()
        if row is None:
            raise ConflictError(table, guid, "row was modified or deleted concurrently")
        return row

    # Local writes

    async def insert(self, table: str, tenant: Tenant, values: dict, *, now: datetime) -> dict:
        vt_table = get_table(table)
        data = self._writable(vt_table, values)
        columns = ["company_id", "division_id", *data, "created_at", "updated_at"]
        params = [tenant.company_id, tenant.division_id, *data.values(), now, now]
        async with self._cursor() as cur:
            await cur.execute(self._insert_statement(vt_table, columns), params)
            return await cur.fetchone()

    async def insert_many(
        self, table: str, tenant: Tenant, rows: list[dict], *, now: datetime
    ) -> list[dict]:
        """Insert rows in one transaction on a dedicated connection."""
        vt_table = get_table(table)
        created = []
        try:
            async with await get_connection(self.config, autocommit=False) as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        for index, values in enumerate(rows):
                            data = self._writable(vt_table, values)
                            columns = ["company_id", "division_id", *data, "created_at", "updated_at"]
                            params = [tenant.company_id, tenant.division_id, *data.values(), now, now]
                            try:
                                await cur.execute(self._insert_statement(vt_table, columns), params)
                            except psycopg.errors.UniqueViolation as e:
                                raise ConstraintViolation(str(e).strip(), row_index=index) from e
                            created.append(await cur.fetchone())
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e
        logger.debug(f"Inserted {len(created)} rows into {table} for {tenant}")
        return created

    async def update(
        self, table: str, tenant: Tenant, row_id: int, values: dict, *, now: datetime
    ) -> dict:
        vt_table = get_table(table)
        data = self._writable(vt_table, values)
        assignments = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in data]
        assignments.append(sql.SQL("updated_at = %s"))
        stmt = sql.SQL("UPDATE {} SET {} WHERE id = %s AND {} RETURNING *").format(
            self._table(vt_table), sql.SQL(", ").join(assignments), self._tenant_clause())
        async with self._cursor() as cur:
            await cur.execute(stmt, [*data.values(), now, row_id,
                                     tenant.company_id, tenant.division_id])
            row = await cur.fetchone()
        if row is None:
            raise NotFound(table, row_id)
        return row

    async def delete(self, table: str, tenant: Tenant, row_id: int) -> None:
        vt_table = get_table(table)
        stmt = sql.SQL("DELETE FROM {} WHERE id = %s AND {} RETURNING id").format(
            self._table(vt_table), self._tenant_clause())
        async with self._cursor() as cur:
            await cur.execute(stmt, (row_id, tenant.company_id, tenant.division_id))
            row = await cur.fetchone()
        if row is None:
            raise NotFound(table, row_id)

    # Audit and integrity

    async def sync_audit(self, table: str, tenant: Tenant) -> tuple[Optional[datetime], int]:
        vt_table = get_table(table)
        stmt = sql.SQL(
            "SELECT last_synced_at AS latest, COUNT(*) AS cnt FROM {} "
            "WHERE {} AND last_synced_at = (SELECT MAX(last_synced_at) FROM {} WHERE {}) "
            "GROUP BY last_synced_at"
        ).format(self._table(vt_table), self._tenant_clause(),
                 self._table(vt_table), self._tenant_clause())
        params = (tenant.company_id, tenant.division_id) * 2
        async with self._cursor() as cur:
            await cur.execute(stmt, params)
            result = await cur.fetchone()
        if result is None:
            return None, 0
        return result["latest"], result["cnt"]

    async def count_duplicates(self, table: str, tenant: Tenant, column: str) -> int:
        vt_table = get_table(table)
        stmt = sql.SQL(
            "SELECT COALESCE(SUM(n - 1), 0) AS dupes FROM ("
            "SELECT COUNT(*) AS n FROM {} WHERE {} AND {} IS NOT NULL "
            "GROUP BY {} HAVING COUNT(*) > 1) d"
        ).format(self._table(vt_table), self._tenant_clause(),
                 sql.Identifier(column), sql.Identifier(column))
        async with self._cursor() as cur:
            await cur.execute(stmt, (tenant.company_id, tenant.division_id))
            result = await cur.fetchone()
        return int(result["dupes"]) if result else 0

    async def count_missing_references(
        self, table: str, tenant: Tenant, column: str, target: str, target_column: str
    ) -> int:
        source, referenced = get_table(table), get_table(target)
        stmt = sql.SQL(
            "SELECT COUNT(*) AS cnt FROM {} s "
            "WHERE s.company_id = %s AND s.division_id = %s AND s.{} IS NOT NULL "
            "AND NOT EXISTS (SELECT 1 FROM {} r WHERE r.company_id = s.company_id "
            "AND r.division_id = s.division_id AND r.{} = s.{})"
        ).format(self._table(source), sql.Identifier(column), self._table(referenced),
                 sql.Identifier(target_column), sql.Identifier(column))
        async with self._cursor() as cur:
            await cur.execute(stmt, (tenant.company_id, tenant.division_id))
            result = await cur.fetchone()
        return result["cnt"] if result else 0

    async def initialize_schema(self) -> None:
        """Create the VT schema and tables if they don't exist."""
        ddl = render_schema_sql(self.schema)
        async with self._cursor() as cur:
            await cur.execute(ddl)
        logger.info(f"VT schema {self.schema} initialized")
