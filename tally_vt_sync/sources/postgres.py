"""
Legacy source reading the flat Tally export tables directly from PostgreSQL.

The export tables carry company_id / division_id columns; rows are paged by
offset in guid order.
"""
from __future__ import annotations
import asyncio
from typing import Optional

import psycopg
from psycopg import sql
from loguru import logger

from ..config import VtSyncConfig
from ..errors import SourceUnavailable
from ..models import check_identifier
from ..store.postgres import get_connection
from ..tenant import Tenant
from .base import LegacyBatch


class PostgresLegacySource:

    def __init__(self, config: Optional[VtSyncConfig] = None):
        self.config = config or VtSyncConfig.from_env()
        self.schema = check_identifier(self.config.legacy_schema)
        self._conn: Optional[psycopg.AsyncConnection] = None
        self._connect_lock = asyncio.Lock()

    async def connection(self, table: str) -> psycopg.AsyncConnection:
        async with self._connect_lock:
            if self._conn is None or self._conn.closed:
                try:
                    self._conn = await get_connection(self.config)
                except psycopg.Error as e:
                    logger.error(f"Cannot connect to legacy database: {e}")
                    raise SourceUnavailable(table, f"cannot connect: {e}") from e
            return self._conn

    async def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            await self._conn.close()
        self._conn = None

    async def has_table(self, table: str) -> bool:
        check_identifier(table)
        conn = await self.connection(table)
        try:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT to_regclass(%s) IS NOT NULL AS present", (f"{self.schema}.{table}",)
                )
                result = await cur.fetchone()
        except psycopg.Error as e:
            raise SourceUnavailable(table, str(e).strip()) from e
        return bool(result and result["present"])

    async def fetch_rows(
        self,
        table: str,
        tenant: Tenant,
        cursor: Optional[str] = None,
        batch_size: int = 1000,
    ) -> LegacyBatch:
        check_identifier(table)
        offset = int(cursor or 0)
        stmt = sql.SQL(
            "SELECT * FROM {} WHERE company_id = %s AND division_id = %s "
            "ORDER BY guid NULLS FIRST, ctid LIMIT %s OFFSET %s"
        ).format(sql.Identifier(self.schema, table))

        conn = await self.connection(table)
        try:
            async with conn.cursor() as cur:
                await cur.execute(
                    stmt, (tenant.company_id, tenant.division_id, batch_size, offset)
                )
                rows = await cur.fetchall()
        except psycopg.Error as e:
            raise SourceUnavailable(table, str(e).strip()) from e

        next_cursor = str(offset + len(rows)) if len(rows) == batch_size else None
        return LegacyBatch(rows=rows, next_cursor=next_cursor)
