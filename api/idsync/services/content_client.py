from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import httpx

from idsync.core.config import get_settings

SYSTEM_COLLECTION_PATHS = {
    "directus_users": "/users",
    "directus_roles": "/roles",
}


class ContentSystemError(Exception):
    """Raised when the content system is unreachable or answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ContentClient:
    """Item-collection client for the downstream content system."""

    def __init__(
        self,
        base_url: str | None,
        token: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token)

    async def list_items(
        self,
        collection: str,
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        for field_name, value in (filters or {}).items():
            params[f"filter[{field_name}][_eq]"] = self._query_value(value)
        if limit is not None:
            params["limit"] = limit
        if fields:
            params["fields"] = ",".join(fields)

        data = await self._request("GET", self._collection_path(collection), params=params)
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    async def get_item(self, collection: str, item_id: str) -> dict[str, Any] | None:
        try:
            data = await self._request("GET", f"{self._collection_path(collection)}/{item_id}")
        except ContentSystemError as exc:
            if exc.status_code in {403, 404}:
                return None
            raise
        return data if isinstance(data, dict) else None

    async def create_item(self, collection: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", self._collection_path(collection), json=dict(payload))
        if not isinstance(data, dict) or not data.get("id"):
            raise ContentSystemError(f"create in {collection} returned no id")
        return data

    async def update_item(self, collection: str, item_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", f"{self._collection_path(collection)}/{item_id}", json=dict(payload))
        return data if isinstance(data, dict) else {}

    async def delete_item(self, collection: str, item_id: str) -> None:
        await self._request("DELETE", f"{self._collection_path(collection)}/{item_id}")

    @staticmethod
    def _collection_path(collection: str) -> str:
        return SYSTEM_COLLECTION_PATHS.get(collection, f"/items/{collection}")

    @staticmethod
    def _query_value(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if not self.configured:
            raise ContentSystemError("content system is not configured")

        headers = {"Authorization": f"Bearer {self.token}"}
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.request(method, url, params=params, json=json, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise ContentSystemError(f"content system request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise ContentSystemError(
                f"content system returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None

        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body


@lru_cache
def get_content_client() -> ContentClient:
    settings = get_settings()
    return ContentClient(
        settings.content_api_url,
        settings.content_api_token,
        timeout_seconds=settings.content_timeout_seconds,
    )
