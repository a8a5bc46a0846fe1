"""Callbacks invoked by the authentication provider around its own flows.

These endpoints must not break the provider's pipeline: sync outcomes are
reported in the body with a 200, and storage outages degrade to permissive
answers that are logged.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status

from idsync.core.config import Settings, get_settings
from idsync.core.security import get_machine_principal
from idsync.schemas.identity import (
    AuthIdentityEvent,
    AuthIdentityRef,
    LockoutStateOut,
    PreSignInOut,
    SyncOutcomeOut,
)
from idsync.services.identity import ProviderIdentity
from idsync.services.identity_sync import SyncResult, get_upsert_engine
from idsync.services.repository import RepositoryError, get_repository

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_event_scope(principal) -> None:
    try:
        principal.require_scopes({"auth-events:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _to_identity(payload: AuthIdentityEvent) -> ProviderIdentity:
    return ProviderIdentity(
        external_id=payload.external_id,
        email=payload.email,
        display_name=payload.display_name,
        avatar_url=payload.avatar_url,
        email_verified=payload.email_verified,
        username=payload.username,
    )


def _to_outcome(result: SyncResult) -> SyncOutcomeOut:
    role_sync = None
    if result.role_sync is not None:
        role_sync = {
            "status": result.role_sync.status,
            "content_identity_id": result.role_sync.content_identity_id,
            "container_id": result.role_sync.container_id,
            "reason": result.role_sync.reason,
        }
    return SyncOutcomeOut(
        status=result.status,
        user_id=result.user.id if result.user else None,
        created=result.created,
        reason=result.reason,
        role_sync=role_sync,
    )


async def _sync_identity(request: Request, payload: AuthIdentityEvent, engine) -> SyncResult:
    return await engine.upsert(
        _to_identity(payload),
        provider=payload.provider,
        request_path=payload.request_path or request.url.path,
        client_ip=payload.client_ip,
    )


@router.post("/sign-up", response_model=SyncOutcomeOut)
async def sign_up(
    request: Request,
    payload: AuthIdentityEvent,
    principal=Depends(get_machine_principal),
    engine=Depends(get_upsert_engine),
) -> SyncOutcomeOut:
    _require_event_scope(principal)
    result = await _sync_identity(request, payload, engine)
    return _to_outcome(result)


@router.post("/sign-in", response_model=SyncOutcomeOut)
async def sign_in(
    request: Request,
    payload: AuthIdentityEvent,
    principal=Depends(get_machine_principal),
    engine=Depends(get_upsert_engine),
    repository=Depends(get_repository),
) -> SyncOutcomeOut:
    _require_event_scope(principal)
    result = await _sync_identity(request, payload, engine)
    if result.ok and result.user is not None:
        try:
            await repository.reset_sign_in_failures(user_id=result.user.id)
        except RepositoryError as exc:
            logger.warning("Could not reset sign-in failures user_id=%s error=%s", result.user.id, exc)
    return _to_outcome(result)


@router.post("/sign-in-failed", response_model=LockoutStateOut)
async def sign_in_failed(
    payload: AuthIdentityRef,
    principal=Depends(get_machine_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> LockoutStateOut:
    _require_event_scope(principal)
    try:
        user = await repository.record_failed_sign_in(
            external_id=payload.external_id,
            max_attempts=settings.lockout_max_attempts,
            lockout_minutes=settings.lockout_minutes,
        )
    except RepositoryError as exc:
        logger.warning("Could not record failed sign-in external_id=%s error=%s", payload.external_id, exc)
        return LockoutStateOut(known=False)

    if user is None:
        return LockoutStateOut(known=False)
    if user.locked_until is not None:
        logger.info("Account locked external_id=%s until=%s", payload.external_id, user.locked_until.isoformat())
    return LockoutStateOut(known=True, failed_attempts=user.failed_attempts, locked_until=user.locked_until)


@router.post("/pre-sign-in", response_model=PreSignInOut)
async def pre_sign_in(
    payload: AuthIdentityRef,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> PreSignInOut:
    _require_event_scope(principal)
    try:
        user = await repository.find_user_by_external_id(payload.external_id)
    except RepositoryError as exc:
        logger.warning("Pre-sign-in check skipped external_id=%s error=%s", payload.external_id, exc)
        return PreSignInOut(allowed=True)

    if user is None:
        return PreSignInOut(allowed=True)
    if not user.is_active:
        return PreSignInOut(allowed=False, reason="inactive")
    if user.locked_until is not None and user.locked_until > datetime.now(timezone.utc):
        return PreSignInOut(allowed=False, reason="locked", locked_until=user.locked_until)
    return PreSignInOut(allowed=True)
