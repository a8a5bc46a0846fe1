from __future__ import annotations

import asyncio
import itertools
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

os.environ.setdefault("IDSYNC_OTEL_ENABLED", "false")

from idsync.services.identity import (  # noqa: E402
    ROLES,
    CanonicalUserRecord,
    ExternalIdentity,
    ProviderIdentity,
    build_new_user,
    build_user_update,
)
from idsync.services.ledger import ErrorLedger  # noqa: E402
from idsync.services.repository import (  # noqa: E402
    DownstreamTaskRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SyncErrorRecord,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeRepository:
    """In-memory stand-in for PostgresRepository with the same merge rules."""

    def __init__(self) -> None:
        self.users: dict[int, CanonicalUserRecord] = {}
        self.sync_errors: dict[int, SyncErrorRecord] = {}
        self.tasks: dict[int, DownstreamTaskRecord] = {}
        self._user_ids = itertools.count(1)
        self._error_ids = itertools.count(1)
        self._task_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.upsert_error: Exception | None = None
        self.insert_sync_error_error: Exception | None = None
        self.update_statements = 0
        self.task_max_attempts = 3
        self.task_retry_base_seconds = 30

    def add_user(self, **overrides: Any) -> CanonicalUserRecord:
        now = _now()
        user_id = next(self._user_ids)
        values: dict[str, Any] = {
            "id": user_id,
            "external_id": f"ext-{user_id}",
            "email": f"user{user_id}@example.com",
            "first_name": None,
            "last_name": None,
            "username": None,
            "avatar_url": None,
            "role": "standard",
            "is_active": True,
            "failed_attempts": 0,
            "locked_until": None,
            "preferences": None,
            "content_identity_id": None,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        record = CanonicalUserRecord(**values)
        self.users[record.id] = record
        return record

    async def close(self) -> None:
        return None

    async def upsert_user_from_identity(
        self,
        *,
        identity: ExternalIdentity,
        first_name: str | None,
        last_name: str | None,
        role: str | None,
    ) -> tuple[CanonicalUserRecord, bool]:
        async with self._lock:
            await asyncio.sleep(0)
            if self.upsert_error is not None:
                raise self.upsert_error

            existing = self._find(identity.external_id, identity.email)
            if existing is not None:
                changes = build_user_update(existing, identity, first_name=first_name, last_name=last_name, role=role)
                if not changes:
                    return existing, False
                return self._apply(existing, changes), False

            values = build_new_user(identity, first_name=first_name, last_name=last_name, role=role)
            return self.add_user(**values), True

    def _find(self, external_id: str, email: str | None) -> CanonicalUserRecord | None:
        by_external = next((user for user in self.users.values() if user.external_id == external_id), None)
        if by_external is not None:
            return by_external
        if email:
            return next((user for user in self.users.values() if user.email.lower() == email.lower()), None)
        return None

    def _apply(self, user: CanonicalUserRecord, changes: dict[str, Any]) -> CanonicalUserRecord:
        self.update_statements += 1
        updated = replace(user, **changes, updated_at=_now())
        self.users[user.id] = updated
        return updated

    async def get_user(self, user_id: int) -> CanonicalUserRecord | None:
        return self.users.get(user_id)

    async def find_user_by_external_id(self, external_id: str) -> CanonicalUserRecord | None:
        return next((user for user in self.users.values() if user.external_id == external_id), None)

    async def list_users(
        self,
        *,
        search: str | None = None,
        role: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CanonicalUserRecord]:
        if role is not None and role not in ROLES:
            raise RepositoryValidationError("invalid role")
        needle = (search or "").strip().lower()
        users = [
            user
            for user in self.users.values()
            if (
                not needle
                or any(
                    needle in (value or "").lower()
                    for value in (user.email, user.first_name, user.last_name, user.username)
                )
            )
            and (role is None or user.role == role)
            and (is_active is None or user.is_active == is_active)
        ]
        users.sort(key=lambda user: (user.created_at, user.id), reverse=True)
        return users[offset : offset + limit]

    async def find_user_by_email(self, email: str) -> CanonicalUserRecord | None:
        return next((user for user in self.users.values() if user.email.lower() == email.strip().lower()), None)

    async def find_user_by_external_id_or_email(
        self,
        *,
        external_id: str,
        email: str | None,
    ) -> CanonicalUserRecord | None:
        return self._find(external_id, email)

    async def link_external_id(self, *, user_id: int, external_id: str) -> CanonicalUserRecord:
        user = self.users[user_id]
        if user.external_id not in {None, external_id}:
            raise RepositoryConflictError("user is linked to a different external id")
        if user.external_id == external_id:
            return user
        return self._apply(user, {"external_id": external_id})

    async def set_content_identity_id(self, *, user_id: int, content_identity_id: str) -> CanonicalUserRecord:
        user = self.users.get(user_id)
        if user is None:
            raise RepositoryNotFoundError("user not found")
        self.users[user_id] = replace(user, content_identity_id=content_identity_id)
        return self.users[user_id]

    async def update_user_admin_fields(
        self,
        *,
        user_id: int,
        role: str | None = None,
        is_active: bool | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[CanonicalUserRecord, bool]:
        if role is not None and role not in ROLES:
            raise RepositoryValidationError("invalid role")
        user = self.users.get(user_id)
        if user is None:
            raise RepositoryNotFoundError("user not found")
        target = {
            key: value
            for key, value in {
                "role": role,
                "is_active": is_active,
                "first_name": first_name,
                "last_name": last_name,
            }.items()
            if value is not None and value != ""
        }
        changes = {key: value for key, value in target.items() if getattr(user, key) != value}
        if not changes:
            return user, False
        updated = self._apply(user, changes)
        role_changed = "role" in changes
        if role_changed and updated.external_id:
            await self.enqueue_downstream_task(
                kind="sync_external_role",
                target_id=updated.external_id,
                payload={"user_id": updated.id, "role": updated.role},
            )
        return updated, role_changed

    async def record_failed_sign_in(
        self,
        *,
        external_id: str,
        max_attempts: int,
        lockout_minutes: int,
    ) -> CanonicalUserRecord | None:
        user = await self.find_user_by_external_id(external_id)
        if user is None:
            return None
        now = _now()
        lock_expired = user.locked_until is not None and user.locked_until <= now
        base = 0 if lock_expired else user.failed_attempts
        active_lock = user.locked_until if user.locked_until and user.locked_until > now else None
        attempts = base + 1
        locked_until = now + timedelta(minutes=lockout_minutes) if attempts >= max_attempts else active_lock
        self.users[user.id] = replace(user, failed_attempts=attempts, locked_until=locked_until, updated_at=now)
        return self.users[user.id]

    async def reset_sign_in_failures(self, *, user_id: int) -> None:
        user = self.users[user_id]
        self.users[user_id] = replace(user, failed_attempts=0, locked_until=None)

    async def delete_user(self, *, user_id: int) -> CanonicalUserRecord:
        user = self.users.pop(user_id, None)
        if user is None:
            raise RepositoryNotFoundError("user not found")
        if user.external_id:
            await self.enqueue_downstream_task(
                kind="delete_external_identity",
                target_id=user.external_id,
                payload={"user_id": user.id},
            )
        return user

    async def insert_sync_error(self, **fields: Any) -> SyncErrorRecord:
        if self.insert_sync_error_error is not None:
            raise self.insert_sync_error_error
        now = _now()
        record = SyncErrorRecord(
            id=next(self._error_ids),
            retry_count=0,
            handled=False,
            exhausted=False,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.sync_errors[record.id] = record
        return record

    async def list_sync_errors(
        self,
        *,
        event_type: str | None = None,
        handled: bool | None = None,
        exhausted: bool | None = None,
        max_retry_count: int | None = None,
        oldest_first: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncErrorRecord]:
        records = [
            record
            for record in self.sync_errors.values()
            if (event_type is None or record.event_type == event_type)
            and (handled is None or record.handled == handled)
            and (exhausted is None or record.exhausted == exhausted)
            and (max_retry_count is None or record.retry_count < max_retry_count)
        ]
        records.sort(key=lambda record: (record.created_at, record.id), reverse=not oldest_first)
        return records[offset : offset + limit]

    def _get_sync_error(self, error_id: int) -> SyncErrorRecord:
        if error_id not in self.sync_errors:
            raise RepositoryNotFoundError("sync error not found")
        return self.sync_errors[error_id]

    async def mark_sync_error_handled(self, error_id: int) -> SyncErrorRecord:
        record = self._get_sync_error(error_id)
        self.sync_errors[error_id] = replace(record, handled=True, updated_at=_now())
        return self.sync_errors[error_id]

    async def increment_sync_error_retry(self, error_id: int, *, max_retries: int) -> SyncErrorRecord:
        record = self._get_sync_error(error_id)
        retry_count = record.retry_count + 1
        self.sync_errors[error_id] = replace(
            record,
            retry_count=retry_count,
            exhausted=record.exhausted or retry_count >= max_retries,
            updated_at=_now(),
        )
        return self.sync_errors[error_id]

    async def get_sync_error_stats(self, *, recent_since: datetime) -> dict[str, Any]:
        unhandled = [record for record in self.sync_errors.values() if not record.handled]
        by_type: dict[str, int] = {}
        for record in unhandled:
            by_type[record.event_type] = by_type.get(record.event_type, 0) + 1
        return {
            "total": len(self.sync_errors),
            "unhandled": len(unhandled),
            "exhausted": sum(1 for record in unhandled if record.exhausted),
            "by_type": by_type,
            "recent_24h": sum(1 for record in self.sync_errors.values() if record.created_at > recent_since),
        }

    async def enqueue_downstream_task(
        self,
        *,
        kind: str,
        target_id: str,
        payload: dict[str, Any] | None = None,
    ) -> DownstreamTaskRecord:
        now = _now()
        task = DownstreamTaskRecord(
            id=next(self._task_ids),
            kind=kind,
            target_id=target_id,
            payload=payload or {},
            status="queued",
            attempt=0,
            lease_expires_at=None,
            next_run_at=now,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        self.tasks[task.id] = task
        return task

    async def claim_downstream_tasks(self, *, limit: int, lease_seconds: int) -> list[DownstreamTaskRecord]:
        now = _now()
        due = [
            task
            for task in sorted(self.tasks.values(), key=lambda task: (task.next_run_at, task.id))
            if (task.status == "queued" and task.next_run_at <= now)
            or (task.status == "claimed" and task.lease_expires_at is not None and task.lease_expires_at <= now)
        ][:limit]
        claimed = []
        for task in due:
            updated = replace(
                task,
                status="claimed",
                attempt=task.attempt + 1,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            self.tasks[task.id] = updated
            claimed.append(updated)
        return claimed

    async def complete_downstream_task(self, task_id: int) -> DownstreamTaskRecord:
        task = self.tasks[task_id]
        if task.status != "claimed":
            raise RepositoryConflictError("task is not in claimed state")
        self.tasks[task_id] = replace(task, status="done", lease_expires_at=None, last_error=None)
        return self.tasks[task_id]

    async def fail_downstream_task(self, task_id: int, *, error: str) -> DownstreamTaskRecord:
        task = self.tasks[task_id]
        if task.status != "claimed":
            raise RepositoryConflictError("task is not in claimed state")
        if task.attempt >= self.task_max_attempts:
            updated = replace(task, status="dead_letter", last_error=error, lease_expires_at=None)
        else:
            delay = self.task_retry_base_seconds * (2 ** max(0, task.attempt - 1))
            updated = replace(
                task,
                status="queued",
                last_error=error,
                lease_expires_at=None,
                next_run_at=_now() + timedelta(seconds=delay),
            )
        self.tasks[task_id] = updated
        return updated

    async def list_downstream_tasks(self, *, status: str | None, limit: int, offset: int) -> list[DownstreamTaskRecord]:
        tasks = [task for task in self.tasks.values() if status is None or task.status == status]
        return tasks[offset : offset + limit]


class FakeExternalStore:
    """Provider store backed by a dict, recording admin API writes."""

    def __init__(self, identities: list[ProviderIdentity] | None = None) -> None:
        self.identities: dict[str, ProviderIdentity] = {
            identity.external_id: identity for identity in identities or []
        }
        self.deleted: list[str] = []
        self.roles: dict[str, str] = {}
        self.lookup_error: Exception | None = None
        self.admin_error: Exception | None = None

    async def get_by_id(self, external_id: str) -> ProviderIdentity | None:
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.identities.get(external_id)

    async def get_by_email(self, email: str) -> ProviderIdentity | None:
        if self.lookup_error is not None:
            raise self.lookup_error
        return next(
            (
                identity
                for identity in self.identities.values()
                if identity.email and identity.email.lower() == email.strip().lower()
            ),
            None,
        )

    async def iter_identities(self, *, page_size: int = 50):
        if self.lookup_error is not None:
            raise self.lookup_error
        ordered = [self.identities[key] for key in sorted(self.identities)]
        for start in range(0, len(ordered), page_size):
            yield ordered[start : start + page_size]

    async def delete_identity(self, external_id: str) -> None:
        if self.admin_error is not None:
            raise self.admin_error
        self.identities.pop(external_id, None)
        self.deleted.append(external_id)

    async def set_role(self, external_id: str, role: str) -> None:
        if self.admin_error is not None:
            raise self.admin_error
        self.roles[external_id] = "admin" if role == "admin" else "user"


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def ledger(repository: FakeRepository) -> ErrorLedger:
    return ErrorLedger(repository, retention_days=90, max_payload_bytes=1024, hash_rounds=4)


@pytest.fixture
def external_store() -> FakeExternalStore:
    return FakeExternalStore()


@pytest.fixture
def provider_identity():
    def build(index: int = 1, **overrides: Any) -> ProviderIdentity:
        values: dict[str, Any] = {
            "external_id": f"00000000-0000-0000-0000-{index:012d}",
            "email": f"person{index}@example.com",
            "display_name": f"Person Number{index}",
            "avatar_url": None,
            "email_verified": True,
            "username": None,
        }
        values.update(overrides)
        return ProviderIdentity(**values)

    return build
