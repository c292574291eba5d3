"""
Supabase REST Wrapper - async, no SDK dependency
.table().select().eq().execute() chaining over httpx + PostgREST query params.

Used by: agents/agent_wallet.py (agent_wallets table)

Failures raise ExternalAPIError instead of returning empty rows, so a storage
outage is never mistaken for a missing record.
"""

import logging
from typing import Dict, Optional

import httpx

from .config import SupabaseConfig
from .errors import ConfigMissingError, ExternalAPIError

logger = logging.getLogger("SupabaseREST")


class QueryResult:
    """Mimics supabase execute() result with .data attribute"""
    def __init__(self, data, count=None):
        self.data = data if data else []
        self.count = count


class TableQuery:
    """Chainable query builder for the PostgREST API"""

    def __init__(self, client: httpx.AsyncClient, base_url: str, key: str, table: str):
        self._client = client
        self._url = f"{base_url}/rest/v1/{table}"
        self._table = table
        self._key = key
        self._params: Dict[str, str] = {}
        self._method = "GET"
        self._body = None
        self._prefer = "return=representation"
        self._want_single = False

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Content-Type": "application/json",
            "Prefer": self._prefer,
        }

    # ── Query builders ──

    def select(self, columns: str = "*"):
        self._method = "GET"
        self._params["select"] = columns
        return self

    def insert(self, data):
        self._method = "POST"
        self._body = data
        return self

    def update(self, data: dict):
        self._method = "PATCH"
        self._body = data
        return self

    def delete(self):
        self._method = "DELETE"
        return self

    # ── Filters / modifiers ──

    def eq(self, column: str, value):
        self._params[column] = f"eq.{value}"
        return self

    def order(self, column: str, desc: bool = False):
        self._params["order"] = f"{column}.{'desc' if desc else 'asc'}"
        return self

    def single(self):
        """Return the first matching row (or None) as .data"""
        self._want_single = True
        self._params["limit"] = "1"
        return self

    # ── Execute ──

    async def execute(self) -> QueryResult:
        try:
            resp = await self._client.request(
                self._method,
                self._url,
                headers=self._headers(),
                params=self._params,
                json=self._body if self._method in ("POST", "PATCH") else None,
            )
        except httpx.HTTPError as e:
            logger.error(f"[SupabaseREST] {self._method} {self._table} request failed: {e}")
            raise ExternalAPIError("supabase", message=f"Supabase request failed: {e}") from e

        if resp.status_code not in (200, 201, 204):
            logger.error(f"[SupabaseREST] {self._method} {self._table}: {resp.status_code} {resp.text[:300]}")
            raise ExternalAPIError("supabase", resp.status_code, f"Supabase {self._method} {self._table} failed")

        data = resp.json() if resp.text else []
        if self._want_single and isinstance(data, list):
            data = data[0] if data else None
        return QueryResult(data)


class SupabaseREST:
    """Lightweight async Supabase REST client sharing one httpx pool"""

    def __init__(self, supabase_config: SupabaseConfig, client: Optional[httpx.AsyncClient] = None):
        if not supabase_config.enabled:
            raise ConfigMissingError("SUPABASE_URL/SUPABASE_KEY")
        self._url = supabase_config.url.rstrip("/")
        self._key = supabase_config.key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)
        logger.info(f"[SupabaseREST] Configured for {self._url[:40]}...")

    def table(self, name: str) -> TableQuery:
        return TableQuery(self._client, self._url, self._key, name)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
