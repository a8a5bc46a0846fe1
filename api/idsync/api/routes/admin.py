from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from idsync.core.security import get_human_principal
from idsync.schemas.identity import (
    AdminUserPatchOut,
    AdminUserPatchRequest,
    CanonicalUserOut,
    Role,
    RoleSyncOut,
    SyncOutcomeOut,
    UserSyncRequest,
)
from idsync.schemas.sync_errors import (
    DownstreamTaskOut,
    DownstreamTaskStatus,
    ReconciliationOut,
    SyncErrorEventType,
    SyncErrorOut,
    SyncErrorStatsOut,
)
from idsync.services.external_store import ExternalProviderError, get_external_store
from idsync.services.identity import requires_content_identity
from idsync.services.identity_sync import get_upsert_engine
from idsync.services.ledger import get_error_ledger
from idsync.services.reconciliation import get_reconciliation_sweep
from idsync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from idsync.services.role_sync import get_role_sync

router = APIRouter()


def _require_admin(principal) -> None:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("/sync-errors", response_model=list[SyncErrorOut])
async def list_sync_errors(
    principal=Depends(get_human_principal),
    ledger=Depends(get_error_ledger),
    event_type: SyncErrorEventType | None = Query(default=None),
    handled: bool | None = Query(default=False),
    exhausted: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SyncErrorOut]:
    _require_admin(principal)
    try:
        records = await ledger.list_errors(
            event_type=event_type,
            handled=handled,
            exhausted=exhausted,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SyncErrorOut(**asdict(record)) for record in records]


@router.get("/sync-errors/stats", response_model=SyncErrorStatsOut)
async def get_sync_error_stats(
    principal=Depends(get_human_principal),
    ledger=Depends(get_error_ledger),
) -> SyncErrorStatsOut:
    _require_admin(principal)
    try:
        stats = await ledger.get_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncErrorStatsOut(**stats)


@router.post("/sync-errors/{error_id}/handle", response_model=SyncErrorOut)
async def mark_sync_error_handled(
    error_id: int,
    principal=Depends(get_human_principal),
    ledger=Depends(get_error_ledger),
) -> SyncErrorOut:
    _require_admin(principal)
    try:
        record = await ledger.mark_handled(error_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncErrorOut(**asdict(record))


@router.post("/reconciliation", response_model=ReconciliationOut)
async def trigger_reconciliation(
    principal=Depends(get_human_principal),
    sweep=Depends(get_reconciliation_sweep),
    full_sweep: bool = Query(default=False),
) -> ReconciliationOut:
    _require_admin(principal)
    result = await sweep.run(full_sweep=full_sweep)
    return ReconciliationOut(**result)


@router.post("/users/sync", response_model=SyncOutcomeOut)
async def sync_user_by_email(
    payload: UserSyncRequest,
    principal=Depends(get_human_principal),
    external_store=Depends(get_external_store),
    engine=Depends(get_upsert_engine),
) -> SyncOutcomeOut:
    _require_admin(principal)
    try:
        identity = await external_store.get_by_email(payload.email)
    except (ExternalProviderError, RepositoryUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if identity is None:
        return SyncOutcomeOut(status="not_found", reason="no provider identity for email")

    result = await engine.upsert(identity, provider="admin")
    return SyncOutcomeOut(
        status=result.status,
        user_id=result.user.id if result.user else None,
        created=result.created,
        reason=result.reason,
    )


@router.get("/users", response_model=list[CanonicalUserOut])
async def list_users(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    search: str | None = Query(default=None, max_length=255),
    role: Role | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=25, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CanonicalUserOut]:
    _require_admin(principal)
    try:
        users = await repository.list_users(
            search=search,
            role=role,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [CanonicalUserOut(**asdict(user)) for user in users]


@router.get("/users/{user_id}", response_model=CanonicalUserOut)
async def get_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CanonicalUserOut:
    _require_admin(principal)
    try:
        user = await repository.get_user(user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return CanonicalUserOut(**asdict(user))


@router.patch("/users/{user_id}", response_model=AdminUserPatchOut)
async def patch_user(
    user_id: int,
    payload: AdminUserPatchRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    role_sync=Depends(get_role_sync),
) -> AdminUserPatchOut:
    _require_admin(principal)
    try:
        user, role_changed = await repository.update_user_admin_fields(
            user_id=user_id,
            role=payload.role,
            is_active=payload.is_active,
            first_name=payload.first_name,
            last_name=payload.last_name,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    role_sync_out = None
    if role_changed and requires_content_identity(user.role):
        outcome = await role_sync.sync(user, user.role)
        if outcome.content_identity_id:
            user.content_identity_id = outcome.content_identity_id
        role_sync_out = RoleSyncOut(
            status=outcome.status,
            content_identity_id=outcome.content_identity_id,
            container_id=outcome.container_id,
            reason=outcome.reason,
        )

    return AdminUserPatchOut(
        user=CanonicalUserOut(**asdict(user)),
        role_changed=role_changed,
        role_sync=role_sync_out,
    )


@router.delete("/users/{user_id}", response_model=CanonicalUserOut)
async def delete_user(
    user_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CanonicalUserOut:
    _require_admin(principal)
    if principal.user_id == user_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="operators cannot delete themselves")
    try:
        deleted = await repository.delete_user(user_id=user_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CanonicalUserOut(**asdict(deleted))


@router.get("/downstream-tasks", response_model=list[DownstreamTaskOut])
async def list_downstream_tasks(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    task_status: DownstreamTaskStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DownstreamTaskOut]:
    _require_admin(principal)
    try:
        tasks = await repository.list_downstream_tasks(status=task_status, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [DownstreamTaskOut(**asdict(task)) for task in tasks]
