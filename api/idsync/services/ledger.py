"""Durable ledger of identity sync failures.

Emails and client addresses are stored as bcrypt hashes only, payloads are
redacted of secret-like keys and capped in size, and every record carries an
expiry stamp for the retention window.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt

from idsync.core.config import get_settings
from idsync.services.repository import PostgresRepository, SyncErrorRecord, get_repository

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "key",
    "credential",
    "creditcard",
    "credit_card",
    "ssn",
    "authorization",
    "cookie",
)
TRUNCATED_KEY = "_truncated"
PREVIEW_KEY = "_preview"


def _is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact_payload(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if _is_sensitive_key(key) else redact_payload(item) for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_payload(item) for item in value]
    return value


def _serialized_size(value: Any) -> int:
    return len(json.dumps(value, default=str, ensure_ascii=False).encode("utf-8"))


def truncate_payload(payload: dict[str, Any], max_bytes: int) -> dict[str, Any]:
    serialized = json.dumps(payload, default=str, ensure_ascii=False)
    if len(serialized.encode("utf-8")) <= max_bytes:
        # JSON-native result; storage encodes it with a plain json.dumps.
        return json.loads(serialized)

    preview_length = max(0, max_bytes - _serialized_size({TRUNCATED_KEY: True, PREVIEW_KEY: ""}))
    while True:
        truncated = {TRUNCATED_KEY: True, PREVIEW_KEY: serialized[:preview_length]}
        # Escaped quotes and multibyte characters grow on re-serialization.
        if _serialized_size(truncated) <= max_bytes or preview_length == 0:
            return truncated
        overflow = _serialized_size(truncated) - max_bytes
        preview_length = max(0, preview_length - max(overflow, 1))


def _prehash(value: str) -> bytes:
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest().encode("ascii")


def hash_sensitive_value(value: str, *, rounds: int = 12) -> str:
    return bcrypt.hashpw(_prehash(value), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_sensitive_value(value: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(value), hashed.encode("ascii"))
    except ValueError:
        return False


class ErrorLedger:
    def __init__(
        self,
        repository: PostgresRepository,
        *,
        retention_days: int = 90,
        max_payload_bytes: int = 1024,
        hash_rounds: int = 12,
    ) -> None:
        self.repository = repository
        self.retention_days = retention_days
        self.max_payload_bytes = max_payload_bytes
        self.hash_rounds = hash_rounds

    async def record(
        self,
        event_type: str,
        *,
        error: str,
        provider: str | None = None,
        external_id: str | None = None,
        email: str | None = None,
        user_id: int | None = None,
        request_path: str | None = None,
        client_ip: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> SyncErrorRecord:
        """Persist one failure. Storage errors propagate to the caller."""
        email_hash = await self._hash(email)
        client_ip_hash = await self._hash(client_ip)
        sanitized = None
        if payload is not None:
            sanitized = truncate_payload(redact_payload(payload), self.max_payload_bytes)

        record = await self.repository.insert_sync_error(
            event_type=event_type,
            provider=provider,
            external_id=external_id,
            email_hash=email_hash,
            user_id=user_id,
            request_path=request_path[:500] if request_path else None,
            client_ip_hash=client_ip_hash,
            error=error,
            payload=sanitized,
            expires_at=datetime.now(timezone.utc) + timedelta(days=self.retention_days),
        )
        logger.info(
            "Recorded sync error id=%s event_type=%s external_id=%s",
            record.id,
            event_type,
            external_id,
        )
        return record

    async def list_errors(
        self,
        *,
        event_type: str | None = None,
        handled: bool | None = False,
        exhausted: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncErrorRecord]:
        return await self.repository.list_sync_errors(
            event_type=event_type,
            handled=handled,
            exhausted=exhausted,
            limit=limit,
            offset=offset,
        )

    async def list_unhandled(self, event_type: str | None = None, *, limit: int = 100) -> list[SyncErrorRecord]:
        return await self.list_errors(event_type=event_type, handled=False, limit=limit)

    async def get_stats(self) -> dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        return await self.repository.get_sync_error_stats(recent_since=since)

    async def mark_handled(self, error_id: int) -> SyncErrorRecord:
        return await self.repository.mark_sync_error_handled(error_id)

    async def increment_retry(self, error_id: int, *, max_retries: int) -> SyncErrorRecord:
        record = await self.repository.increment_sync_error_retry(error_id, max_retries=max_retries)
        if record.exhausted:
            logger.warning(
                "Sync error exhausted retries id=%s event_type=%s external_id=%s retry_count=%s",
                record.id,
                record.event_type,
                record.external_id,
                record.retry_count,
            )
        return record

    async def _hash(self, value: str | None) -> str | None:
        if not value or not value.strip():
            return None
        return await asyncio.to_thread(hash_sensitive_value, value, rounds=self.hash_rounds)


@lru_cache
def get_error_ledger() -> ErrorLedger:
    settings = get_settings()
    return ErrorLedger(
        get_repository(),
        retention_days=settings.sync_error_retention_days,
        max_payload_bytes=settings.sync_error_payload_max_bytes,
        hash_rounds=settings.sync_error_hash_rounds,
    )
