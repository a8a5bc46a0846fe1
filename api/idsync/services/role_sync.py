from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from idsync.core.config import get_settings
from idsync.services.content_client import ContentClient, ContentSystemError, get_content_client
from idsync.services.identity import CanonicalUserRecord, requires_content_identity
from idsync.services.ledger import ErrorLedger, get_error_ledger
from idsync.services.repository import PostgresRepository, get_repository

logger = logging.getLogger(__name__)

CONTENT_ROLE_NAMES = {
    "admin": "Administrator",
    "content_admin": "Content Admin",
    "editor": "Editor",
    "writer": "Writer",
}
FALLBACK_ROLE_IDS = {
    "admin": "ef049c8b-546b-4bbc-9cd7-b05d77e58b66",
    "content_admin": "d70780bd-f3ed-418b-98c2-f5354fd3fa68",
    "editor": "4516009c-8a04-49e4-b4ac-fd4883da6064",
    "writer": "3a4464fb-2189-4710-a164-2503eed88ae7",
}
CONTENT_USERS_COLLECTION = "directus_users"
CONTENT_ROLES_COLLECTION = "directus_roles"
WRITER_CONTAINER_COLLECTION = "spaces"
WRITER_CONTAINER_SLUG = "article"


class RoleIdCache:
    """Role name to content role id entries that expire after a fixed TTL."""

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str | None:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[name]
                return None
            return value

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._entries[name] = (value, self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass(slots=True)
class RoleSyncResult:
    status: str
    content_identity_id: str | None = None
    container_id: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class DownstreamRoleSync:
    def __init__(
        self,
        repository: PostgresRepository,
        content_client: ContentClient,
        role_cache: RoleIdCache,
        ledger: ErrorLedger | None = None,
    ) -> None:
        self.repository = repository
        self.content_client = content_client
        self.role_cache = role_cache
        self.ledger = ledger

    async def sync(self, user: CanonicalUserRecord, role: str) -> RoleSyncResult:
        """Provision or update the content identity for a role that needs one.

        Never raises; failures come back as a ``failed`` result and are
        recorded in the ledger when one is attached.
        """
        if not requires_content_identity(role):
            return RoleSyncResult(status="not_required", content_identity_id=user.content_identity_id)

        try:
            role_id = await self.resolve_role_id(role)
            existing = await self._find_content_identity(user)
            payload: dict[str, Any] = {"email": user.email, "role": role_id, "status": "active"}
            if user.first_name:
                payload["first_name"] = user.first_name
            if user.last_name:
                payload["last_name"] = user.last_name

            if existing is not None:
                content_identity_id = str(existing["id"])
                await self.content_client.update_item(CONTENT_USERS_COLLECTION, content_identity_id, payload)
                status = "updated"
            else:
                created = await self.content_client.create_item(CONTENT_USERS_COLLECTION, payload)
                content_identity_id = str(created["id"])
                status = "provisioned"

            container_id = None
            if role == "writer":
                container_id = await self._ensure_writer_container(user, content_identity_id)

            if user.content_identity_id != content_identity_id:
                await self.repository.set_content_identity_id(user_id=user.id, content_identity_id=content_identity_id)

            logger.info(
                "Content identity %s user_id=%s role=%s content_identity_id=%s",
                status,
                user.id,
                role,
                content_identity_id,
            )
            return RoleSyncResult(status=status, content_identity_id=content_identity_id, container_id=container_id)
        except Exception as exc:
            logger.warning("Content identity sync failed user_id=%s role=%s error=%s", user.id, role, exc)
            await self._record_failure(user, role, exc)
            return RoleSyncResult(status="failed", reason=str(exc))

    async def resolve_role_id(self, role: str) -> str:
        role_name = CONTENT_ROLE_NAMES[role]
        cached = self.role_cache.get(role_name)
        if cached:
            return cached

        try:
            items = await self.content_client.list_items(
                CONTENT_ROLES_COLLECTION,
                filters={"name": role_name},
                limit=1,
                fields=["id"],
            )
        except ContentSystemError as exc:
            logger.warning("Content role lookup failed role=%s error=%s", role_name, exc)
            items = []

        role_id = str(items[0]["id"]) if items and items[0].get("id") else None
        if role_id:
            self.role_cache.set(role_name, role_id)
            return role_id

        logger.warning(
            "Using fallback content role id for role=%s; the content system role table may have drifted",
            role_name,
        )
        return FALLBACK_ROLE_IDS[role]

    async def _find_content_identity(self, user: CanonicalUserRecord) -> dict[str, Any] | None:
        if user.content_identity_id:
            item = await self.content_client.get_item(CONTENT_USERS_COLLECTION, user.content_identity_id)
            if item and item.get("id"):
                return item

        items = await self.content_client.list_items(
            CONTENT_USERS_COLLECTION,
            filters={"email": user.email},
            limit=1,
            fields=["id", "email"],
        )
        if items and items[0].get("id"):
            return items[0]
        return None

    async def _ensure_writer_container(self, user: CanonicalUserRecord, owner_id: str) -> str:
        existing = await self.content_client.list_items(
            WRITER_CONTAINER_COLLECTION,
            filters={"owner": owner_id, "is_default": True},
            limit=1,
            fields=["id"],
        )
        if existing and existing[0].get("id"):
            return str(existing[0]["id"])

        display = user.first_name or user.last_name or user.email.split("@", 1)[0]
        created = await self.content_client.create_item(
            WRITER_CONTAINER_COLLECTION,
            {
                "slug": WRITER_CONTAINER_SLUG,
                "name": f"{display}'s Articles",
                "description": "Default space for general articles",
                "owner": owner_id,
                "is_default": True,
            },
        )
        logger.info("Provisioned default writer space user_id=%s space_id=%s", user.id, created["id"])
        return str(created["id"])

    async def _record_failure(self, user: CanonicalUserRecord, role: str, exc: Exception) -> None:
        if self.ledger is None:
            return
        try:
            await self.ledger.record(
                "sync_failed",
                error=str(exc) or exc.__class__.__name__,
                provider="content",
                external_id=user.external_id,
                email=user.email,
                user_id=user.id,
                payload={"external_id": user.external_id, "role": role},
            )
        except Exception:
            logger.exception("Failed to record content sync failure user_id=%s", user.id)


@lru_cache
def get_role_id_cache() -> RoleIdCache:
    return RoleIdCache(ttl_seconds=get_settings().content_role_cache_ttl_seconds)


@lru_cache
def get_role_sync() -> DownstreamRoleSync:
    return DownstreamRoleSync(
        get_repository(),
        get_content_client(),
        get_role_id_cache(),
        ledger=get_error_ledger(),
    )
