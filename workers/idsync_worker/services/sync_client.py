from __future__ import annotations

from typing import Any

import httpx


class SyncClient:
    """Machine client for the reconciliation endpoints of the identity sync API."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def run_reconciliation(self, *, full_sweep: bool = False) -> dict[str, Any]:
        return await self._post("/reconciliation/run", params={"full_sweep": "true" if full_sweep else "false"})

    async def process_downstream_tasks(self, limit: int = 20) -> dict[str, Any]:
        return await self._post("/reconciliation/downstream-tasks/process", params={"limit": limit})

    async def _post(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            response = await self._client.post(url, params=params, headers=self.headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, params=params, headers=self.headers)
        response.raise_for_status()
        return response.json()
