"""
Legacy source reading export tables through the export service's HTTP API.

Endpoints:
    GET {base}/tables/{table}                -> 200 if the table exists, 404 if not
    GET {base}/tables/{table}/rows?company_id=&division_id=&cursor=&limit=
                                             -> {"rows": [...], "next_cursor": "..."}

requests is blocking, so every call runs in a worker thread.
"""
from __future__ import annotations
import asyncio
from typing import Optional

import requests
from tenacity import (
    retry,
    wait_exponential,
    stop_after_attempt,
    stop_before_delay,
    retry_if_exception_type,
)
from loguru import logger

from ..config import VtSyncConfig
from ..errors import ConfigurationError, SourceUnavailable
from ..models import check_identifier
from ..tenant import Tenant
from .base import LegacyBatch

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "tally-vt-sync/1.0",
}


class LegacyApiError(Exception):
    """Raised when the export API answers with a server error."""
    pass


class HttpLegacySource:
    """
    HTTP client for the export API with retry logic.

    Features:
    - Automatic retry with exponential backoff on connection errors and 5xx,
      bounded by the attempt limit and the fetch timeout
    - Connection pooling via requests.Session
    - API key header when configured
    """

    def __init__(self, config: Optional[VtSyncConfig] = None):
        self.config = config or VtSyncConfig.from_env()
        if not self.config.legacy_api_url:
            raise ConfigurationError("LEGACY_API_URL is required for the HTTP legacy source")
        self.base_url = self.config.legacy_api_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        if self.config.legacy_api_key:
            self.session.headers["x-api-key"] = self.config.legacy_api_key

        self._get = retry(
            wait=wait_exponential(multiplier=1, min=1, max=30),
            # wait_for cannot stop the worker thread; retries end within fetch_timeout
            stop=(
                stop_after_attempt(max(1, self.config.retry_attempts))
                | stop_before_delay(self.config.fetch_timeout)
            ),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, LegacyApiError)),
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying export API request (attempt {retry_state.attempt_number})..."
            ),
            reraise=True,
        )(self._get_once)

    def _get_once(self, path: str, params: Optional[dict] = None) -> requests.Response:
        r = self.session.get(
            f"{self.base_url}{path}", params=params, timeout=self.config.fetch_timeout
        )
        if r.status_code >= 500:
            raise LegacyApiError(f"HTTP {r.status_code}: {r.text[:200]}")
        return r

    async def _request(self, table: str, path: str, params: Optional[dict] = None) -> requests.Response:
        try:
            return await asyncio.to_thread(self._get, path, params)
        except (requests.RequestException, LegacyApiError) as e:
            logger.error(f"Export API request for {table} failed: {e}")
            raise SourceUnavailable(table, f"export API unavailable: {e}") from e

    async def has_table(self, table: str) -> bool:
        check_identifier(table)
        r = await self._request(table, f"/tables/{table}")
        if r.status_code == 404:
            return False
        if not r.ok:
            raise SourceUnavailable(table, f"HTTP {r.status_code}")
        return True

    async def fetch_rows(
        self,
        table: str,
        tenant: Tenant,
        cursor: Optional[str] = None,
        batch_size: int = 1000,
    ) -> LegacyBatch:
        check_identifier(table)
        params = {
            "company_id": tenant.company_id,
            "division_id": tenant.division_id,
            "limit": batch_size,
        }
        if cursor is not None:
            params["cursor"] = cursor

        r = await self._request(table, f"/tables/{table}/rows", params)
        if not r.ok:
            raise SourceUnavailable(table, f"HTTP {r.status_code}: {r.text[:200]}")
        try:
            payload = r.json()
        except ValueError as e:
            raise SourceUnavailable(table, f"invalid JSON from export API: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("rows"), list):
            raise SourceUnavailable(table, "export API response has no rows list")

        return LegacyBatch(rows=payload["rows"], next_cursor=payload.get("next_cursor") or None)

    async def close(self) -> None:
        self.session.close()
