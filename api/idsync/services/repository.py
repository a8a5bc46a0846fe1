from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from idsync.core.config import get_settings
from idsync.services.identity import (
    ROLES,
    CanonicalUserRecord,
    ExternalIdentity,
    build_new_user,
    build_user_update,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class SyncErrorRecord:
    id: int
    event_type: str
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


@dataclass(slots=True)
class DownstreamTaskRecord:
    id: int
    kind: str
    target_id: str
    payload: dict[str, Any]
    status: str
    attempt: int
    lease_expires_at: datetime | None
    next_run_at: datetime
    last_error: str | None
    created_at: datetime
    updated_at: datetime


SYNC_ERROR_EVENT_TYPES = {
    "upsert_failed",
    "missing_mapping",
    "token_inconsistency",
    "sync_failed",
    "reconciliation_failed",
}
DOWNSTREAM_TASK_KINDS = {"delete_external_identity", "sync_external_role"}
DOWNSTREAM_TASK_STATUSES = {"queued", "claimed", "done", "dead_letter"}
USER_WRITABLE_COLUMNS = {
    "external_id",
    "email",
    "first_name",
    "last_name",
    "username",
    "avatar_url",
    "role",
    "is_active",
}

USER_COLUMNS = """
  id,
  external_id,
  email,
  first_name,
  last_name,
  username,
  avatar_url,
  role,
  is_active,
  failed_attempts,
  locked_until,
  preferences,
  content_identity_id,
  created_at,
  updated_at
"""

SYNC_ERROR_COLUMNS = """
  id,
  event_type,
  provider,
  external_id,
  email_hash,
  user_id,
  request_path,
  client_ip_hash,
  error,
  payload,
  expires_at,
  retry_count,
  handled,
  exhausted,
  created_at,
  updated_at
"""

DOWNSTREAM_TASK_COLUMNS = """
  id,
  kind,
  target_id,
  payload,
  status,
  attempt,
  lease_expires_at,
  next_run_at,
  last_error,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        task_max_attempts: int,
        task_retry_base_seconds: int,
        task_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.task_max_attempts = max(1, task_max_attempts)
        self.task_retry_base_seconds = max(0, task_retry_base_seconds)
        self.task_retry_max_seconds = max(0, task_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("IDSYNC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    # Canonical users

    async def upsert_user_from_identity(
        self,
        *,
        identity: ExternalIdentity,
        first_name: str | None,
        last_name: str | None,
        role: str | None,
    ) -> tuple[CanonicalUserRecord, bool]:
        """Merge a validated identity into the canonical store.

        Returns the resulting record and whether it was newly created.
        """
        pool = await self.get_pool()

        for attempt in range(2):
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        await self._lock_identity_keys(
                            conn=conn,
                            external_id=identity.external_id,
                            email=identity.email,
                        )
                        row = await conn.fetchrow(
                            f"""
                            select {USER_COLUMNS}
                            from users
                            where external_id = $1 or lower(email) = $2
                            order by case when external_id = $1 then 0 else 1 end, id
                            limit 1
                            for update
                            """,
                            identity.external_id,
                            identity.email,
                        )
                        if row:
                            existing = self._user_row_to_record(row)
                            changes = build_user_update(
                                existing,
                                identity,
                                first_name=first_name,
                                last_name=last_name,
                                role=role,
                            )
                            if not changes:
                                return existing, False
                            updated = await self._update_user_columns(conn=conn, user_id=existing.id, changes=changes)
                            return updated, False

                        values = build_new_user(identity, first_name=first_name, last_name=last_name, role=role)
                        created = await self._insert_user(conn=conn, values=values)
                        return created, True
            except pg_exc.UniqueViolationError as exc:
                # A concurrent writer committed between lookup and write; look again.
                if attempt == 0:
                    continue
                raise RepositoryConflictError(
                    f"identity conflicts with an existing user ({exc.constraint_name or 'unique'})"
                ) from exc

        raise RepositoryConflictError("identity upsert did not converge")

    async def get_user(self, user_id: int) -> CanonicalUserRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(f"select {USER_COLUMNS} from users where id = $1", user_id)
        return self._user_row_to_record(row) if row else None

    async def find_user_by_external_id(self, external_id: str) -> CanonicalUserRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(f"select {USER_COLUMNS} from users where external_id = $1", external_id)
        return self._user_row_to_record(row) if row else None

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
            raise RepositoryValidationError(f"role must be one of: {', '.join(ROLES)}")

        pool = await self.get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        needle = self._coerce_text(search)
        if needle:
            token = bind(needle.lower())
            conditions.append(
                "("
                + " or ".join(
                    f"strpos(lower(coalesce({column}, '')), {token}) > 0"
                    for column in ("email", "first_name", "last_name", "username")
                )
                + ")"
            )
        if role is not None:
            conditions.append(f"role = {bind(role)}")
        if is_active is not None:
            conditions.append(f"is_active = {bind(is_active)}")

        where_sql = f"where {' and '.join(conditions)}" if conditions else ""
        limit_token = bind(max(1, min(limit, 1000)))
        offset_token = bind(max(0, offset))
        rows = await pool.fetch(
            f"""
            select {USER_COLUMNS}
            from users
            {where_sql}
            order by created_at desc, id desc
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return [self._user_row_to_record(row) for row in rows]

    async def find_user_by_email(self, email: str) -> CanonicalUserRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"select {USER_COLUMNS} from users where lower(email) = lower($1)",
            email.strip(),
        )
        return self._user_row_to_record(row) if row else None

    async def find_user_by_external_id_or_email(
        self,
        *,
        external_id: str,
        email: str | None,
    ) -> CanonicalUserRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            select {USER_COLUMNS}
            from users
            where external_id = $1
               or ($2::text is not null and lower(email) = lower($2))
            order by case when external_id = $1 then 0 else 1 end, id
            limit 1
            """,
            external_id,
            self._coerce_text(email),
        )
        return self._user_row_to_record(row) if row else None

    async def link_external_id(self, *, user_id: int, external_id: str) -> CanonicalUserRecord:
        pool = await self.get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update users
                set external_id = $2, updated_at = now()
                where id = $1 and (external_id is null or external_id = $2)
                returning {USER_COLUMNS}
                """,
                user_id,
                external_id,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("external id already linked to another user") from exc
        if not row:
            raise RepositoryConflictError("user is linked to a different external id")
        return self._user_row_to_record(row)

    async def set_content_identity_id(
        self,
        *,
        user_id: int,
        content_identity_id: str,
    ) -> CanonicalUserRecord:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            update users
            set
              content_identity_id = $2,
              updated_at = case when content_identity_id is distinct from $2 then now() else updated_at end
            where id = $1
            returning {USER_COLUMNS}
            """,
            user_id,
            content_identity_id,
        )
        if not row:
            raise RepositoryNotFoundError("user not found")
        return self._user_row_to_record(row)

    async def update_user_admin_fields(
        self,
        *,
        user_id: int,
        role: str | None = None,
        is_active: bool | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[CanonicalUserRecord, bool]:
        """Apply an administrative edit.

        Returns the updated record and whether the role changed. A role change
        on a linked user queues a provider role sync in the same transaction.
        """
        if role is not None and role not in ROLES:
            raise RepositoryValidationError(f"role must be one of: {', '.join(ROLES)}")

        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"select {USER_COLUMNS} from users where id = $1 for update",
                    user_id,
                )
                if not row:
                    raise RepositoryNotFoundError("user not found")
                existing = self._user_row_to_record(row)

                target: dict[str, Any] = {}
                if role is not None:
                    target["role"] = role
                if is_active is not None:
                    target["is_active"] = is_active
                normalized_first_name = self._coerce_text(first_name)
                if normalized_first_name:
                    target["first_name"] = normalized_first_name
                normalized_last_name = self._coerce_text(last_name)
                if normalized_last_name:
                    target["last_name"] = normalized_last_name

                changes = {column: value for column, value in target.items() if getattr(existing, column) != value}
                if not changes:
                    return existing, False

                updated = await self._update_user_columns(conn=conn, user_id=user_id, changes=changes)
                role_changed = "role" in changes
                if role_changed and updated.external_id:
                    await self._enqueue_downstream_task(
                        conn=conn,
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
        pool = await self.get_pool()
        row = await pool.fetchrow(
            """
            with current_state as (
              select
                id,
                case
                  when locked_until is not null and locked_until <= now() then 0
                  else failed_attempts
                end as base_attempts,
                case when locked_until > now() then locked_until else null end as active_lock
              from users
              where external_id = $1
              for update
            )
            update users u
            set
              failed_attempts = c.base_attempts + 1,
              locked_until = case
                when c.base_attempts + 1 >= $2 then now() + ($3::int * interval '1 minute')
                else c.active_lock
              end,
              updated_at = now()
            from current_state c
            where u.id = c.id
            returning u.*
            """,
            external_id,
            max(1, max_attempts),
            max(1, lockout_minutes),
        )
        return self._user_row_to_record(row) if row else None

    async def reset_sign_in_failures(self, *, user_id: int) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            update users
            set failed_attempts = 0, locked_until = null, updated_at = now()
            where id = $1 and (failed_attempts <> 0 or locked_until is not null)
            """,
            user_id,
        )

    async def delete_user(self, *, user_id: int) -> CanonicalUserRecord:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"delete from users where id = $1 returning {USER_COLUMNS}",
                    user_id,
                )
                if not row:
                    raise RepositoryNotFoundError("user not found")
                deleted = self._user_row_to_record(row)
                if deleted.external_id:
                    await self._enqueue_downstream_task(
                        conn=conn,
                        kind="delete_external_identity",
                        target_id=deleted.external_id,
                        payload={"user_id": deleted.id},
                    )
                return deleted

    async def _lock_identity_keys(self, *, conn: asyncpg.Connection, external_id: str, email: str) -> None:
        # Sorted order keeps two writers from acquiring the pair in opposite order.
        for key in sorted({f"external_id:{external_id}", f"email:{email.lower()}"}):
            await conn.execute("select pg_advisory_xact_lock(hashtextextended($1, 0))", key)

    async def _insert_user(self, *, conn: asyncpg.Connection, values: dict[str, Any]) -> CanonicalUserRecord:
        row = await conn.fetchrow(
            f"""
            insert into users (
              external_id,
              email,
              first_name,
              last_name,
              username,
              avatar_url,
              role,
              is_active,
              failed_attempts,
              locked_until,
              preferences,
              content_identity_id
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12)
            returning {USER_COLUMNS}
            """,
            values["external_id"],
            values["email"],
            values["first_name"],
            values["last_name"],
            values["username"],
            values["avatar_url"],
            values["role"],
            values["is_active"],
            values["failed_attempts"],
            values["locked_until"],
            json.dumps(values["preferences"]) if values["preferences"] is not None else None,
            values["content_identity_id"],
        )
        return self._user_row_to_record(row)

    async def _update_user_columns(
        self,
        *,
        conn: asyncpg.Connection,
        user_id: int,
        changes: dict[str, Any],
    ) -> CanonicalUserRecord:
        params: list[Any] = [user_id]
        assignments: list[str] = []
        for column, value in changes.items():
            if column not in USER_WRITABLE_COLUMNS:
                raise RepositoryValidationError(f"column is not writable: {column}")
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")

        row = await conn.fetchrow(
            f"""
            update users
            set {", ".join(assignments)}, updated_at = now()
            where id = $1
            returning {USER_COLUMNS}
            """,
            *params,
        )
        if not row:
            raise RepositoryNotFoundError("user not found")
        return self._user_row_to_record(row)

    # Sync error ledger

    async def insert_sync_error(
        self,
        *,
        event_type: str,
        provider: str | None,
        external_id: str | None,
        email_hash: str | None,
        user_id: int | None,
        request_path: str | None,
        client_ip_hash: str | None,
        error: str,
        payload: dict[str, Any] | None,
        expires_at: datetime,
    ) -> SyncErrorRecord:
        if event_type not in SYNC_ERROR_EVENT_TYPES:
            raise RepositoryValidationError(f"unknown sync error event type: {event_type}")

        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            insert into sync_errors (
              event_type,
              provider,
              external_id,
              email_hash,
              user_id,
              request_path,
              client_ip_hash,
              error,
              payload,
              expires_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            returning {SYNC_ERROR_COLUMNS}
            """,
            event_type,
            provider,
            external_id,
            email_hash,
            user_id,
            request_path,
            client_ip_hash,
            error,
            json.dumps(payload) if payload is not None else None,
            expires_at,
        )
        return self._sync_error_row_to_record(row)

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
        normalized_event_type = self._coerce_text(event_type)
        if normalized_event_type and normalized_event_type not in SYNC_ERROR_EVENT_TYPES:
            raise RepositoryValidationError(
                f"event_type must be one of: {', '.join(sorted(SYNC_ERROR_EVENT_TYPES))}",
            )

        pool = await self.get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if normalized_event_type:
            conditions.append(f"event_type = {bind(normalized_event_type)}")
        if handled is not None:
            conditions.append(f"handled = {bind(handled)}")
        if exhausted is not None:
            conditions.append(f"exhausted = {bind(exhausted)}")
        if max_retry_count is not None:
            conditions.append(f"retry_count < {bind(max_retry_count)}")

        where_sql = f"where {' and '.join(conditions)}" if conditions else ""
        order_sql = "created_at asc, id asc" if oldest_first else "created_at desc, id desc"
        limit_token = bind(max(1, min(limit, 1000)))
        offset_token = bind(max(0, offset))

        rows = await pool.fetch(
            f"""
            select {SYNC_ERROR_COLUMNS}
            from sync_errors
            {where_sql}
            order by {order_sql}
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return [self._sync_error_row_to_record(row) for row in rows]

    async def mark_sync_error_handled(self, error_id: int) -> SyncErrorRecord:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_errors
            set handled = true, updated_at = now()
            where id = $1
            returning {SYNC_ERROR_COLUMNS}
            """,
            error_id,
        )
        if not row:
            raise RepositoryNotFoundError("sync error not found")
        return self._sync_error_row_to_record(row)

    async def increment_sync_error_retry(self, error_id: int, *, max_retries: int) -> SyncErrorRecord:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_errors
            set
              retry_count = retry_count + 1,
              exhausted = exhausted or retry_count + 1 >= $2,
              updated_at = now()
            where id = $1
            returning {SYNC_ERROR_COLUMNS}
            """,
            error_id,
            max(1, max_retries),
        )
        if not row:
            raise RepositoryNotFoundError("sync error not found")
        return self._sync_error_row_to_record(row)

    async def get_sync_error_stats(self, *, recent_since: datetime) -> dict[str, Any]:
        pool = await self.get_pool()
        totals = await pool.fetchrow(
            """
            select
              count(*) as total,
              count(*) filter (where handled = false) as unhandled,
              count(*) filter (where handled = false and exhausted = true) as exhausted,
              count(*) filter (where created_at > $1) as recent
            from sync_errors
            """,
            recent_since,
        )
        by_type_rows = await pool.fetch(
            """
            select event_type, count(*) as count
            from sync_errors
            where handled = false
            group by event_type
            order by event_type
            """
        )
        return {
            "total": int(totals["total"] or 0),
            "unhandled": int(totals["unhandled"] or 0),
            "exhausted": int(totals["exhausted"] or 0),
            "by_type": {row["event_type"]: int(row["count"] or 0) for row in by_type_rows},
            "recent_24h": int(totals["recent"] or 0),
        }

    # Downstream task queue

    async def enqueue_downstream_task(
        self,
        *,
        kind: str,
        target_id: str,
        payload: dict[str, Any] | None = None,
    ) -> DownstreamTaskRecord:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            return await self._enqueue_downstream_task(conn=conn, kind=kind, target_id=target_id, payload=payload)

    async def claim_downstream_tasks(self, *, limit: int, lease_seconds: int) -> list[DownstreamTaskRecord]:
        pool = await self.get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select id
                      from downstream_tasks
                      where (status = 'queued' and next_run_at <= now())
                         or (status = 'claimed' and lease_expires_at is not null and lease_expires_at <= now())
                      order by next_run_at asc, id asc
                      limit $1
                      for update skip locked
                    )
                    update downstream_tasks t
                    set
                      status = 'claimed',
                      attempt = t.attempt + 1,
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      updated_at = now()
                    from due d
                    where t.id = d.id
                    returning t.*
                    """,
                    bounded_limit,
                    max(1, lease_seconds),
                )
                return [self._downstream_task_row_to_record(row) for row in rows]

    async def complete_downstream_task(self, task_id: int) -> DownstreamTaskRecord:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            update downstream_tasks
            set status = 'done', lease_expires_at = null, last_error = null, updated_at = now()
            where id = $1 and status = 'claimed'
            returning {DOWNSTREAM_TASK_COLUMNS}
            """,
            task_id,
        )
        if not row:
            raise RepositoryConflictError("task is not in claimed state")
        return self._downstream_task_row_to_record(row)

    async def fail_downstream_task(self, task_id: int, *, error: str) -> DownstreamTaskRecord:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select attempt, status from downstream_tasks where id = $1 for update",
                    task_id,
                )
                if not current:
                    raise RepositoryNotFoundError("task not found")
                if current["status"] != "claimed":
                    raise RepositoryConflictError("task is not in claimed state")

                attempt = int(current["attempt"])
                if attempt >= self.task_max_attempts:
                    resolved_status = "dead_letter"
                    next_run_at: datetime | None = None
                else:
                    resolved_status = "queued"
                    next_run_at = datetime.now(timezone.utc) + timedelta(
                        seconds=self._compute_retry_delay_seconds(attempt=attempt)
                    )

                row = await conn.fetchrow(
                    f"""
                    update downstream_tasks
                    set
                      status = $2,
                      last_error = $3,
                      lease_expires_at = null,
                      next_run_at = coalesce($4::timestamptz, next_run_at),
                      updated_at = now()
                    where id = $1
                    returning {DOWNSTREAM_TASK_COLUMNS}
                    """,
                    task_id,
                    resolved_status,
                    error[:2000],
                    next_run_at,
                )
                return self._downstream_task_row_to_record(row)

    async def list_downstream_tasks(
        self,
        *,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[DownstreamTaskRecord]:
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in DOWNSTREAM_TASK_STATUSES:
            raise RepositoryValidationError("status must be one of: claimed, dead_letter, done, queued")

        pool = await self.get_pool()
        rows = await pool.fetch(
            f"""
            select {DOWNSTREAM_TASK_COLUMNS}
            from downstream_tasks
            where ($1::text is null or status = $1)
            order by updated_at desc, id desc
            limit $2
            offset $3
            """,
            normalized_status,
            limit,
            offset,
        )
        return [self._downstream_task_row_to_record(row) for row in rows]

    async def _enqueue_downstream_task(
        self,
        *,
        conn: asyncpg.Connection,
        kind: str,
        target_id: str,
        payload: dict[str, Any] | None,
    ) -> DownstreamTaskRecord:
        if kind not in DOWNSTREAM_TASK_KINDS:
            raise RepositoryValidationError(f"unknown downstream task kind: {kind}")
        row = await conn.fetchrow(
            f"""
            insert into downstream_tasks (kind, target_id, payload)
            values ($1, $2, $3::jsonb)
            returning {DOWNSTREAM_TASK_COLUMNS}
            """,
            kind,
            target_id,
            json.dumps(payload or {}),
        )
        return self._downstream_task_row_to_record(row)

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.task_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.task_retry_base_seconds * (2**multiplier)
        return min(delay, self.task_retry_max_seconds)

    @staticmethod
    def _user_row_to_record(row: asyncpg.Record) -> CanonicalUserRecord:
        preferences = PostgresRepository._coerce_json_dict(row["preferences"])
        return CanonicalUserRecord(
            id=int(row["id"]),
            external_id=row["external_id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            username=row["username"],
            avatar_url=row["avatar_url"],
            role=row["role"],
            is_active=bool(row["is_active"]),
            failed_attempts=int(row["failed_attempts"] or 0),
            locked_until=row["locked_until"],
            preferences=preferences if row["preferences"] is not None else None,
            content_identity_id=row["content_identity_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _sync_error_row_to_record(row: asyncpg.Record) -> SyncErrorRecord:
        return SyncErrorRecord(
            id=int(row["id"]),
            event_type=row["event_type"],
            provider=row["provider"],
            external_id=row["external_id"],
            email_hash=row["email_hash"],
            user_id=row["user_id"],
            request_path=row["request_path"],
            client_ip_hash=row["client_ip_hash"],
            error=row["error"],
            payload=PostgresRepository._coerce_json_dict(row["payload"]) if row["payload"] is not None else None,
            expires_at=row["expires_at"],
            retry_count=int(row["retry_count"] or 0),
            handled=bool(row["handled"]),
            exhausted=bool(row["exhausted"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _downstream_task_row_to_record(row: asyncpg.Record) -> DownstreamTaskRecord:
        return DownstreamTaskRecord(
            id=int(row["id"]),
            kind=row["kind"],
            target_id=row["target_id"],
            payload=PostgresRepository._coerce_json_dict(row["payload"]),
            status=row["status"],
            attempt=int(row["attempt"] or 0),
            lease_expires_at=row["lease_expires_at"],
            next_run_at=row["next_run_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        task_max_attempts=settings.downstream_task_max_attempts,
        task_retry_base_seconds=settings.downstream_task_retry_base_seconds,
        task_retry_max_seconds=settings.downstream_task_retry_max_seconds,
    )
