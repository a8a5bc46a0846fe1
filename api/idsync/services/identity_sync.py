from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from idsync.services.identity import (
    CanonicalUserRecord,
    IdentityValidationError,
    ProviderIdentity,
    normalize_role,
    requires_content_identity,
    split_display_name,
    validate_identity,
)
from idsync.services.ledger import ErrorLedger, get_error_ledger
from idsync.services.repository import PostgresRepository, get_repository
from idsync.services.role_sync import DownstreamRoleSync, RoleSyncResult, get_role_sync

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    status: str
    user: CanonicalUserRecord | None = None
    created: bool = False
    reason: str | None = None
    role_sync: RoleSyncResult | None = None

    @property
    def ok(self) -> bool:
        return self.status == "synced"


class IdentityUpsertEngine:
    def __init__(
        self,
        repository: PostgresRepository,
        ledger: ErrorLedger,
        role_sync: DownstreamRoleSync | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.role_sync = role_sync

    async def upsert(
        self,
        identity: ProviderIdentity,
        *,
        role: str | None = None,
        provider: str | None = None,
        request_path: str | None = None,
        client_ip: str | None = None,
        record_failures: bool = True,
    ) -> SyncResult:
        """Merge an asserted identity into the canonical store.

        Never raises. Invalid input yields ``invalid``; storage and other
        runtime errors yield ``failed``. Both are written to the ledger when
        ``record_failures`` is set.
        """
        try:
            validated = validate_identity(identity)
            explicit_role = normalize_role(role)
            first_name, last_name = split_display_name(validated.display_name)
            user, created = await self.repository.upsert_user_from_identity(
                identity=validated,
                first_name=first_name,
                last_name=last_name,
                role=explicit_role,
            )
        except IdentityValidationError as exc:
            logger.warning("Rejected identity external_id=%s reason=%s", identity.external_id, exc)
            if record_failures:
                await self._record_failure(identity, exc, provider, request_path, client_ip)
            return SyncResult(status="invalid", reason=str(exc))
        except Exception as exc:
            logger.warning(
                "Identity upsert failed external_id=%s error=%s",
                identity.external_id,
                exc.__class__.__name__,
            )
            if record_failures:
                await self._record_failure(identity, exc, provider, request_path, client_ip)
            return SyncResult(status="failed", reason=str(exc) or exc.__class__.__name__)

        logger.info(
            "Identity synced external_id=%s user_id=%s created=%s",
            validated.external_id,
            user.id,
            created,
        )

        role_sync_result = None
        if explicit_role is not None and requires_content_identity(explicit_role) and self.role_sync is not None:
            role_sync_result = await self.role_sync.sync(user, explicit_role)
            if role_sync_result.content_identity_id and user.content_identity_id != role_sync_result.content_identity_id:
                user.content_identity_id = role_sync_result.content_identity_id

        return SyncResult(status="synced", user=user, created=created, role_sync=role_sync_result)

    async def _record_failure(
        self,
        identity: ProviderIdentity,
        exc: Exception,
        provider: str | None,
        request_path: str | None,
        client_ip: str | None,
    ) -> None:
        try:
            await self.ledger.record(
                "upsert_failed",
                error=str(exc) or exc.__class__.__name__,
                provider=provider,
                external_id=identity.external_id or None,
                email=identity.email,
                request_path=request_path,
                client_ip=client_ip,
                payload={"external_id": identity.external_id},
            )
        except Exception:
            logger.exception("Failed to record upsert failure external_id=%s", identity.external_id)


@lru_cache
def get_upsert_engine() -> IdentityUpsertEngine:
    return IdentityUpsertEngine(get_repository(), get_error_ledger(), get_role_sync())
