from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SyncErrorEventType = Literal[
    "upsert_failed",
    "missing_mapping",
    "token_inconsistency",
    "sync_failed",
    "reconciliation_failed",
]
DownstreamTaskKind = Literal["delete_external_identity", "sync_external_role"]
DownstreamTaskStatus = Literal["queued", "claimed", "done", "dead_letter"]


class SyncErrorOut(BaseModel):
    id: int
    event_type: SyncErrorEventType
    provider: str | None
    external_id: str | None
    email_hash: str | None
    user_id: int | None
    request_path: str | None
    client_ip_hash: str | None
    error: str
    payload: dict[str, Any] | None
    expires_at: datetime | None
    retry_count: int
    handled: bool
    exhausted: bool
    created_at: datetime
    updated_at: datetime


class SyncErrorStatsOut(BaseModel):
    total: int
    unhandled: int
    exhausted: int
    by_type: dict[str, int] = Field(default_factory=dict)
    recent_24h: int


class RetryPassOut(BaseModel):
    success: int
    failed: int
    skipped: int
    exhausted: int


class RepairPassOut(BaseModel):
    fixed: int
    failed: int


class FullSweepOut(BaseModel):
    synced: int
    failed: int
    skipped: int


class ReconciliationOut(BaseModel):
    retry: RetryPassOut | None
    repair: RepairPassOut | None
    full_sweep: FullSweepOut | None = None
    errors: dict[str, str] = Field(default_factory=dict)


class DownstreamTaskOut(BaseModel):
    id: int
    kind: DownstreamTaskKind
    target_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: DownstreamTaskStatus
    attempt: int
    lease_expires_at: datetime | None
    next_run_at: datetime
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class TaskProcessingOut(BaseModel):
    claimed: int
    done: int
    retried: int
    dead_lettered: int
