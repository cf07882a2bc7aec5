"""
Supabase reference data source for the Reference Cache Service.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx

from shared.errors import ExternalServiceError
from shared.logging import get_logger


class ReferenceSource(Protocol):
    """Anything able to return every row of a reference table."""

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        """Return all rows of ``table`` ordered by name ascending."""
        ...


class SupabaseReferenceSource:
    """Reads reference tables through Supabase's PostgREST endpoint."""

    def __init__(
        self,
        supabase_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = supabase_url.rstrip('/')
        self.logger = get_logger("reference-cache.supabase")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                headers=self._headers(),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        """Fetch every row of ``table`` ordered by name."""
        params = {"select": "*", "order": "name.asc"}
        client = self._get_client()

        try:
            response = await client.get(f"/{table}", params=params)
        except httpx.HTTPError as exc:
            self.logger.error("Supabase request failed", table=table, error=str(exc))
            raise ExternalServiceError(
                service="supabase",
                message=str(exc) or exc.__class__.__name__,
                details={"table": table}
            ) from exc

        if response.status_code != 200:
            self.logger.error(
                "Supabase query returned an error",
                table=table,
                status_code=response.status_code,
                response=response.text
            )
            raise ExternalServiceError(
                service="supabase",
                message=f"Unexpected status {response.status_code}",
                details={"table": table, "status_code": response.status_code, "body": response.text}
            )

        try:
            rows = response.json()
        except ValueError as exc:
            raise ExternalServiceError(
                service="supabase",
                message="Response body is not valid JSON",
                details={"table": table}
            ) from exc

        if not isinstance(rows, list):
            raise ExternalServiceError(
                service="supabase",
                message="Expected a JSON array of rows",
                details={"table": table}
            )

        self.logger.debug("Reference rows retrieved", table=table, count=len(rows))
        return rows

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
