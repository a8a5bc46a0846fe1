from __future__ import annotations

import logging
from functools import lru_cache

from idsync.core.config import get_settings
from idsync.services.external_store import ExternalIdentityStore, get_external_store
from idsync.services.repository import DownstreamTaskRecord, PostgresRepository, get_repository

logger = logging.getLogger(__name__)


class DownstreamTaskProcessor:
    """Drains queued provider-side writes (deletions and role updates)."""

    def __init__(
        self,
        repository: PostgresRepository,
        external_store: ExternalIdentityStore,
        *,
        lease_seconds: int = 120,
    ) -> None:
        self.repository = repository
        self.external_store = external_store
        self.lease_seconds = lease_seconds

    async def process(self, limit: int = 20) -> dict[str, int]:
        tasks = await self.repository.claim_downstream_tasks(limit=limit, lease_seconds=self.lease_seconds)
        counts = {"claimed": len(tasks), "done": 0, "retried": 0, "dead_lettered": 0}

        for task in tasks:
            try:
                await self._execute(task)
            except Exception as exc:
                failed = await self.repository.fail_downstream_task(
                    task.id,
                    error=str(exc) or exc.__class__.__name__,
                )
                if failed.status == "dead_letter":
                    counts["dead_lettered"] += 1
                    logger.error(
                        "Downstream task dead-lettered id=%s kind=%s target_id=%s attempt=%s error=%s",
                        task.id,
                        task.kind,
                        task.target_id,
                        failed.attempt,
                        exc,
                    )
                else:
                    counts["retried"] += 1
                    logger.warning(
                        "Downstream task failed id=%s kind=%s attempt=%s next_run_at=%s error=%s",
                        task.id,
                        task.kind,
                        failed.attempt,
                        failed.next_run_at.isoformat(),
                        exc,
                    )
                continue

            await self.repository.complete_downstream_task(task.id)
            counts["done"] += 1
            logger.info("Downstream task done id=%s kind=%s target_id=%s", task.id, task.kind, task.target_id)

        return counts

    async def _execute(self, task: DownstreamTaskRecord) -> None:
        if task.kind == "delete_external_identity":
            await self.external_store.delete_identity(task.target_id)
            return
        if task.kind == "sync_external_role":
            role = task.payload.get("role")
            if not isinstance(role, str) or not role:
                raise ValueError("sync_external_role task is missing a role")
            await self.external_store.set_role(task.target_id, role)
            return
        raise ValueError(f"unsupported downstream task kind: {task.kind}")


@lru_cache
def get_task_processor() -> DownstreamTaskProcessor:
    return DownstreamTaskProcessor(
        get_repository(),
        get_external_store(),
        lease_seconds=get_settings().downstream_task_lease_seconds,
    )
