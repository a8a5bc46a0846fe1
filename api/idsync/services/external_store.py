from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
import httpx

from idsync.core.config import get_settings
from idsync.services.identity import ProviderIdentity
from idsync.services.repository import PostgresRepository, get_repository

logger = logging.getLogger(__name__)

TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class ExternalProviderError(Exception):
    """Raised when the provider store or its admin API cannot serve a request."""


def provider_role_for(role: str) -> str:
    return "admin" if role == "admin" else "user"


class ExternalIdentityStore:
    """Read access to the provider's user table plus its admin write API."""

    def __init__(
        self,
        repository: PostgresRepository,
        *,
        table: str = "auth.users",
        query_timeout_seconds: float = 10.0,
        admin_url: str | None = None,
        service_role_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not TABLE_NAME_RE.match(table):
            raise ValueError(f"invalid provider table name: {table!r}")
        self.repository = repository
        self.table = table
        self.query_timeout_seconds = query_timeout_seconds
        self.admin_url = (admin_url or "").rstrip("/")
        self.service_role_key = service_role_key
        self._client = client

    async def get_by_id(self, external_id: str) -> ProviderIdentity | None:
        row = await self._fetchrow(
            f"""
            select id::text as id, email, raw_user_meta_data, email_confirmed_at
            from {self.table}
            where id::text = $1
            """,
            external_id,
        )
        return self._row_to_identity(row) if row else None

    async def get_by_email(self, email: str) -> ProviderIdentity | None:
        row = await self._fetchrow(
            f"""
            select id::text as id, email, raw_user_meta_data, email_confirmed_at
            from {self.table}
            where lower(email) = lower($1)
            order by created_at asc
            limit 1
            """,
            email.strip(),
        )
        return self._row_to_identity(row) if row else None

    async def iter_identities(self, *, page_size: int = 50) -> AsyncIterator[list[ProviderIdentity]]:
        """Yield every provider identity in pages ordered by id."""
        bounded_page_size = max(1, min(page_size, 1000))
        last_id: str | None = None
        while True:
            rows = await self._fetch(
                f"""
                select id::text as id, email, raw_user_meta_data, email_confirmed_at
                from {self.table}
                where ($1::text is null or id::text > $1)
                order by id::text asc
                limit $2
                """,
                last_id,
                bounded_page_size,
            )
            if not rows:
                return
            yield [self._row_to_identity(row) for row in rows]
            if len(rows) < bounded_page_size:
                return
            last_id = rows[-1]["id"]

    async def delete_identity(self, external_id: str) -> None:
        response = await self._admin_request("DELETE", f"/auth/v1/admin/users/{external_id}")
        if response.status_code == 404:
            logger.info("Provider identity already absent external_id=%s", external_id)
            return
        self._raise_for_status(response, "delete identity")

    async def set_role(self, external_id: str, role: str) -> None:
        response = await self._admin_request(
            "PUT",
            f"/auth/v1/admin/users/{external_id}",
            json={"app_metadata": {"role": provider_role_for(role)}},
        )
        self._raise_for_status(response, "set role")

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        pool = await self.repository.get_pool()
        try:
            return await pool.fetchrow(query, *args, timeout=self.query_timeout_seconds)
        except (asyncpg.PostgresError, TimeoutError) as exc:
            raise ExternalProviderError(f"provider store query failed: {exc.__class__.__name__}") from exc

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self.repository.get_pool()
        try:
            return await pool.fetch(query, *args, timeout=self.query_timeout_seconds)
        except (asyncpg.PostgresError, TimeoutError) as exc:
            raise ExternalProviderError(f"provider store query failed: {exc.__class__.__name__}") from exc

    async def _admin_request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> httpx.Response:
        if not self.admin_url or not self.service_role_key:
            raise ExternalProviderError("provider admin API is not configured")

        headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }
        url = f"{self.admin_url}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, json=json, headers=headers)
            async with httpx.AsyncClient(timeout=self.query_timeout_seconds) as client:
                return await client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise ExternalProviderError(f"provider admin request failed: {exc.__class__.__name__}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise ExternalProviderError(f"provider admin API failed to {action}: HTTP {response.status_code}")

    @staticmethod
    def _row_to_identity(row: asyncpg.Record) -> ProviderIdentity:
        metadata = row["raw_user_meta_data"]
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = {}
        if not isinstance(metadata, dict):
            metadata = {}

        return ProviderIdentity(
            external_id=row["id"],
            email=row["email"],
            display_name=_first_text(metadata, "full_name", "name"),
            avatar_url=_first_text(metadata, "avatar_url", "picture"),
            email_verified=row["email_confirmed_at"] is not None,
            username=_first_text(metadata, "user_name", "preferred_username"),
        )


def _first_text(metadata: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@lru_cache
def get_external_store() -> ExternalIdentityStore:
    settings = get_settings()
    return ExternalIdentityStore(
        get_repository(),
        table=settings.external_users_table,
        query_timeout_seconds=settings.external_timeout_seconds,
        admin_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
    )

