from fastapi import APIRouter, Depends, HTTPException, Query, status

from idsync.core.security import get_machine_principal
from idsync.schemas.sync_errors import ReconciliationOut, TaskProcessingOut
from idsync.services.downstream_tasks import get_task_processor
from idsync.services.reconciliation import get_reconciliation_sweep
from idsync.services.repository import RepositoryConflictError, RepositoryUnavailableError

router = APIRouter()


def _require_reconciliation_scope(principal) -> None:
    try:
        principal.require_scopes({"reconciliation:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/run", response_model=ReconciliationOut)
async def run_reconciliation(
    principal=Depends(get_machine_principal),
    sweep=Depends(get_reconciliation_sweep),
    full_sweep: bool = Query(default=False),
) -> ReconciliationOut:
    _require_reconciliation_scope(principal)
    result = await sweep.run(full_sweep=full_sweep)
    return ReconciliationOut(**result)


@router.post("/downstream-tasks/process", response_model=TaskProcessingOut)
async def process_downstream_tasks(
    principal=Depends(get_machine_principal),
    processor=Depends(get_task_processor),
    limit: int = Query(default=20, ge=1, le=200),
) -> TaskProcessingOut:
    _require_reconciliation_scope(principal)
    try:
        counts = await processor.process(limit=limit)
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return TaskProcessingOut(**counts)
