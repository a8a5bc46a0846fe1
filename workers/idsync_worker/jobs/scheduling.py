from __future__ import annotations

import random


def is_due(last_run_at: float | None, interval_seconds: float, now: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= interval_seconds


def next_backoff(current: float, maximum: float, *, jitter: float | None = None) -> float:
    """Double the delay with up to 50% jitter, capped at ``maximum``."""
    if jitter is None:
        jitter = random.uniform(0.0, 0.5)
    return min(current * (2.0 + jitter), maximum)


def summarize_reconciliation(result: dict) -> str:
    parts = []
    for name in ("retry", "repair", "full_sweep"):
        counts = result.get(name)
        if isinstance(counts, dict):
            rendered = ",".join(f"{key}={value}" for key, value in sorted(counts.items()))
            parts.append(f"{name}[{rendered}]")
    errors = result.get("errors")
    if isinstance(errors, dict) and errors:
        parts.append(f"errors[{','.join(sorted(errors))}]")
    return " ".join(parts) or "no passes ran"
