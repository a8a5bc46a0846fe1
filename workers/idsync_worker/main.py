from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time

from opentelemetry import trace

from idsync_worker.core.config import Settings, get_settings
from idsync_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from idsync_worker.jobs.scheduling import is_due, next_backoff, summarize_reconciliation
from idsync_worker.services.sync_client import SyncClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ScheduleState:
    last_reconciliation_at: float | None = None
    last_full_sweep_at: float | None = None
    last_task_drain_at: float | None = None


class CycleError(RuntimeError):
    """Raised after a cycle in which at least one scheduled job failed."""

    def __init__(self, failed_jobs: list[str]) -> None:
        super().__init__(f"scheduled jobs failed: {', '.join(failed_jobs)}")
        self.failed_jobs = failed_jobs


async def _drain_downstream_tasks(client: SyncClient, settings: Settings) -> None:
    with tracer.start_as_current_span("worker.drain_downstream_tasks"):
        counts = await client.process_downstream_tasks(limit=settings.task_batch_size)
        if counts.get("claimed"):
            logger.info(
                "downstream tasks claimed=%s done=%s retried=%s dead_lettered=%s",
                counts.get("claimed"),
                counts.get("done"),
                counts.get("retried"),
                counts.get("dead_lettered"),
            )


async def _reconcile(client: SyncClient, *, full_sweep: bool) -> None:
    with tracer.start_as_current_span("worker.reconciliation") as span:
        span.set_attribute("reconciliation.full_sweep", full_sweep)
        result = await client.run_reconciliation(full_sweep=full_sweep)
        if result.get("errors"):
            logger.warning("reconciliation finished with failed passes: %s", summarize_reconciliation(result))
        else:
            logger.info("reconciliation finished: %s", summarize_reconciliation(result))


async def run_cycle(client: SyncClient, settings: Settings, state: ScheduleState, now: float) -> None:
    """Run every due job. A failed job stays due and does not stop the others."""
    failed: list[str] = []

    if is_due(state.last_task_drain_at, settings.task_drain_interval_seconds, now):
        try:
            await _drain_downstream_tasks(client, settings)
            state.last_task_drain_at = now
        except Exception:
            logger.exception("downstream task drain failed")
            failed.append("drain_downstream_tasks")

    if is_due(state.last_reconciliation_at, settings.reconciliation_interval_seconds, now):
        full_sweep = is_due(state.last_full_sweep_at, settings.full_sweep_interval_seconds, now)
        try:
            await _reconcile(client, full_sweep=full_sweep)
            state.last_reconciliation_at = now
            if full_sweep:
                state.last_full_sweep_at = now
        except Exception:
            logger.exception("reconciliation request failed full_sweep=%s", full_sweep)
            failed.append("reconciliation")

    if failed:
        raise CycleError(failed)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(log_correlation=settings.otel_log_correlation)
    telemetry_runtime = setup_worker_telemetry(settings)
    client = SyncClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    state = ScheduleState()
    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await run_cycle(client, settings, state, time.monotonic())
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except CycleError as exc:
                sleep_for = next_backoff(backoff, settings.max_backoff_seconds)
                logger.warning("worker cycle incomplete: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = next_backoff(backoff, settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
