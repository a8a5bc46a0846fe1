"""Batch repair of drift between the provider store and the canonical store.

Three passes, each bounded by the batch size:

* retry of ``upsert_failed`` ledger records,
* repair of ``missing_mapping`` ledger records,
* a full scan of provider identities that creates any canonical user missing.

Retry and repair run concurrently; a failure in one pass is reported in the
result without aborting the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from functools import lru_cache
from typing import Any

from idsync.core.config import get_settings
from idsync.services.external_store import ExternalIdentityStore, get_external_store
from idsync.services.identity_sync import IdentityUpsertEngine, get_upsert_engine
from idsync.services.ledger import ErrorLedger, get_error_ledger
from idsync.services.repository import PostgresRepository, SyncErrorRecord, get_repository

logger = logging.getLogger(__name__)


class ReconciliationSweep:
    def __init__(
        self,
        repository: PostgresRepository,
        ledger: ErrorLedger,
        engine: IdentityUpsertEngine,
        external_store: ExternalIdentityStore,
        *,
        batch_size: int = 50,
        max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.engine = engine
        self.external_store = external_store
        self.batch_size = max(1, batch_size)
        self.max_retries = max(1, max_retries)

    async def retry_failed_upserts(self) -> dict[str, int]:
        counts = {"success": 0, "failed": 0, "skipped": 0, "exhausted": 0}
        records = await self.repository.list_sync_errors(
            event_type="upsert_failed",
            handled=False,
            exhausted=False,
            max_retry_count=self.max_retries,
            oldest_first=True,
            limit=self.batch_size,
        )

        for record in records:
            if not record.external_id:
                await self.ledger.mark_handled(record.id)
                counts["skipped"] += 1
                continue

            try:
                identity = await self.external_store.get_by_id(record.external_id)
                if identity is None:
                    await self._count_failed_retry(record, counts, reason="identity absent from provider")
                    continue

                result = await self.engine.upsert(identity, provider=record.provider, record_failures=False)
            except Exception as exc:
                await self._count_failed_retry(record, counts, reason=exc.__class__.__name__)
                continue

            if result.ok:
                await self.ledger.mark_handled(record.id)
                counts["success"] += 1
            elif result.status == "invalid":
                # Invalid input will not validate on a later pass either.
                await self._count_failed_retry(record, counts, reason=result.reason or "invalid", permanent=True)
            else:
                await self._count_failed_retry(record, counts, reason=result.status)

        logger.info("Retry pass finished %s", counts)
        return counts

    async def repair_missing_mappings(self) -> dict[str, int]:
        counts = {"fixed": 0, "failed": 0}
        records = await self.repository.list_sync_errors(
            event_type="missing_mapping",
            handled=False,
            oldest_first=True,
            limit=self.batch_size,
        )

        for record in records:
            fixed = False
            try:
                if record.external_id:
                    fixed = await self.repository.find_user_by_external_id(record.external_id) is not None
                    if not fixed:
                        identity = await self.external_store.get_by_id(record.external_id)
                        if identity is not None:
                            result = await self.engine.upsert(
                                identity,
                                provider=record.provider,
                                record_failures=False,
                            )
                            fixed = result.ok
            except Exception as exc:
                logger.warning("Mapping repair failed sync_error_id=%s error=%s", record.id, exc)

            # Unrepairable records are closed too, so they are not reprocessed forever.
            await self.ledger.mark_handled(record.id)
            counts["fixed" if fixed else "failed"] += 1

        logger.info("Repair pass finished %s", counts)
        return counts

    async def full_sweep(self) -> dict[str, int]:
        counts = {"synced": 0, "failed": 0, "skipped": 0}
        async for page in self.external_store.iter_identities(page_size=self.batch_size):
            for identity in page:
                try:
                    existing = await self.repository.find_user_by_external_id_or_email(
                        external_id=identity.external_id,
                        email=identity.email,
                    )
                except Exception as exc:
                    logger.warning(
                        "Full sweep lookup failed external_id=%s error=%s",
                        identity.external_id,
                        exc.__class__.__name__,
                    )
                    counts["failed"] += 1
                    continue
                if existing is not None:
                    counts["skipped"] += 1
                    continue

                result = await self.engine.upsert(identity, provider="reconciliation")
                counts["synced" if result.ok else "failed"] += 1

        logger.info("Full sweep finished %s", counts)
        return counts

    async def run(self, *, full_sweep: bool = False) -> dict[str, Any]:
        errors: dict[str, str] = {}
        retry_counts, repair_counts = await asyncio.gather(
            self._isolated("retry", self.retry_failed_upserts(), errors),
            self._isolated("repair", self.repair_missing_mappings(), errors),
        )
        result: dict[str, Any] = {
            "retry": retry_counts,
            "repair": repair_counts,
            "full_sweep": None,
            "errors": errors,
        }
        if full_sweep:
            result["full_sweep"] = await self._isolated("full_sweep", self.full_sweep(), errors)
        return result

    async def _isolated(
        self,
        name: str,
        pass_coro: Awaitable[dict[str, int]],
        errors: dict[str, str],
    ) -> dict[str, int] | None:
        try:
            return await pass_coro
        except Exception as exc:
            logger.exception("Reconciliation pass failed pass=%s", name)
            errors[name] = str(exc) or exc.__class__.__name__
            try:
                await self.ledger.record(
                    "reconciliation_failed",
                    error=errors[name],
                    provider="reconciliation",
                    payload={"pass": name},
                )
            except Exception:
                logger.exception("Failed to record reconciliation failure pass=%s", name)
            return None

    async def _count_failed_retry(
        self,
        record: SyncErrorRecord,
        counts: dict[str, int],
        *,
        reason: str,
        permanent: bool = False,
    ) -> None:
        max_retries = 1 if permanent else self.max_retries
        updated = await self.ledger.increment_retry(record.id, max_retries=max_retries)
        counts["failed"] += 1
        if updated.exhausted:
            counts["exhausted"] += 1
        logger.info(
            "Retry did not succeed sync_error_id=%s external_id=%s reason=%s retry_count=%s",
            record.id,
            record.external_id,
            reason,
            updated.retry_count,
        )


@lru_cache
def get_reconciliation_sweep() -> ReconciliationSweep:
    settings = get_settings()
    return ReconciliationSweep(
        get_repository(),
        get_error_ledger(),
        get_upsert_engine(),
        get_external_store(),
        batch_size=settings.reconciliation_batch_size,
        max_retries=settings.reconciliation_max_retries,
    )
