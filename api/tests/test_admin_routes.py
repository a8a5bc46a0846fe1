from __future__ import annotations

import asyncio
import hashlib
import json
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

from idsync.core import security
from idsync.core.config import get_settings
from idsync.main import app
from idsync.services.downstream_tasks import DownstreamTaskProcessor, get_task_processor
from idsync.services.external_store import get_external_store
from idsync.services.identity_sync import IdentityUpsertEngine, get_upsert_engine
from idsync.services.ledger import get_error_ledger
from idsync.services.reconciliation import ReconciliationSweep, get_reconciliation_sweep
from idsync.services.repository import get_repository
from idsync.services.role_sync import RoleSyncResult, get_role_sync

AUTH = {"Authorization": "Bearer token-123"}
WORKER_HEADERS = {"X-Module-Id": "reconciler", "X-API-Key": "reconciler-key"}


class RecordingRoleSync:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str]] = []

    async def sync(self, user, role: str) -> RoleSyncResult:
        self.calls.append((user.id, role))
        return RoleSyncResult(status="provisioned", content_identity_id="cms-9")


@pytest.fixture
def role_sync() -> RecordingRoleSync:
    return RecordingRoleSync()


@pytest.fixture
def admin_client(repository, ledger, external_store, role_sync):
    os.environ["IDSYNC_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["IDSYNC_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["IDSYNC_MACHINE_CREDENTIALS_JSON"] = json.dumps(
        {
            "reconciler": {
                "key_hash": hashlib.sha256(b"reconciler-key").hexdigest(),
                "scopes": ["reconciliation:run"],
            }
        }
    )
    get_settings.cache_clear()

    engine = IdentityUpsertEngine(repository, ledger)
    sweep = ReconciliationSweep(repository, ledger, engine, external_store)
    processor = DownstreamTaskProcessor(repository, external_store)
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_error_ledger] = lambda: ledger
    app.dependency_overrides[get_upsert_engine] = lambda: engine
    app.dependency_overrides[get_external_store] = lambda: external_store
    app.dependency_overrides[get_reconciliation_sweep] = lambda: sweep
    app.dependency_overrides[get_task_processor] = lambda: processor
    app.dependency_overrides[get_role_sync] = lambda: role_sync

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for name in ("IDSYNC_SUPABASE_URL", "IDSYNC_SUPABASE_ANON_KEY", "IDSYNC_MACHINE_CREDENTIALS_JSON"):
        os.environ.pop(name, None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


@pytest.fixture
def operator(repository, monkeypatch: pytest.MonkeyPatch):
    user = repository.add_user(external_id="op-1", email="op@example.com", role="admin")
    _mock_supabase_user(monkeypatch, {"id": "op-1", "email": "op@example.com"})
    return user


def test_admin_routes_require_bearer(admin_client: TestClient) -> None:
    response = admin_client.get("/admin/sync-errors")
    assert response.status_code == 401


def test_non_admin_role_is_forbidden(admin_client: TestClient, repository, monkeypatch) -> None:
    repository.add_user(external_id="writer-1", email="writer@example.com", role="writer")
    _mock_supabase_user(monkeypatch, {"id": "writer-1", "email": "writer@example.com"})

    response = admin_client.get("/admin/sync-errors", headers=AUTH)

    assert response.status_code == 403


def test_unmapped_principal_records_missing_mapping(admin_client: TestClient, repository, monkeypatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "ghost", "email": "ghost@example.com"})

    response = admin_client.get("/admin/sync-errors", headers=AUTH)

    assert response.status_code == 401
    [record] = repository.sync_errors.values()
    assert record.event_type == "missing_mapping"
    assert record.external_id == "ghost"
    assert record.request_path == "/admin/sync-errors"
    assert record.email_hash and "ghost@example.com" not in record.email_hash


def test_principal_matched_by_email_is_linked(admin_client: TestClient, repository, monkeypatch) -> None:
    user = repository.add_user(external_id=None, email="Boss@example.com", role="admin")
    _mock_supabase_user(monkeypatch, {"id": "boss-ext", "email": "boss@example.com"})

    response = admin_client.get("/admin/sync-errors/stats", headers=AUTH)

    assert response.status_code == 200
    assert repository.users[user.id].external_id == "boss-ext"


def test_inactive_operator_is_forbidden(admin_client: TestClient, repository, monkeypatch) -> None:
    repository.add_user(external_id="gone-op", email="gone@example.com", role="admin", is_active=False)
    _mock_supabase_user(monkeypatch, {"id": "gone-op", "email": "gone@example.com"})

    response = admin_client.get("/admin/sync-errors", headers=AUTH)

    assert response.status_code == 403


def test_list_stats_and_handle_sync_errors(admin_client: TestClient, ledger, operator) -> None:
    async def seed():
        first = await ledger.record("upsert_failed", error="a", external_id="ext-1")
        await ledger.record("sync_failed", error="b", external_id="ext-2")
        return first

    first = asyncio.run(seed())

    listed = admin_client.get("/admin/sync-errors", headers=AUTH)
    filtered = admin_client.get("/admin/sync-errors", params={"event_type": "sync_failed"}, headers=AUTH)
    invalid_filter = admin_client.get("/admin/sync-errors", params={"event_type": "bogus"}, headers=AUTH)
    handled = admin_client.post(f"/admin/sync-errors/{first.id}/handle", headers=AUTH)
    missing = admin_client.post("/admin/sync-errors/999/handle", headers=AUTH)
    stats = admin_client.get("/admin/sync-errors/stats", headers=AUTH)

    assert listed.status_code == 200
    assert len(listed.json()) == 2
    assert [item["event_type"] for item in filtered.json()] == ["sync_failed"]
    assert invalid_filter.status_code == 422
    assert handled.json()["handled"] is True
    assert missing.status_code == 404
    assert stats.json() == {
        "total": 2,
        "unhandled": 1,
        "exhausted": 0,
        "by_type": {"sync_failed": 1},
        "recent_24h": 2,
    }


def test_trigger_reconciliation_runs_full_sweep(
    admin_client: TestClient,
    repository,
    external_store,
    provider_identity,
    operator,
) -> None:
    for index in range(1, 4):
        identity = provider_identity(index)
        external_store.identities[identity.external_id] = identity

    response = admin_client.post("/admin/reconciliation", params={"full_sweep": "true"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["full_sweep"] == {"synced": 3, "failed": 0, "skipped": 0}
    assert body["errors"] == {}
    assert len(repository.users) == 4


def test_sync_user_by_email(admin_client: TestClient, repository, external_store, provider_identity, operator) -> None:
    identity = provider_identity(7)
    external_store.identities[identity.external_id] = identity

    found = admin_client.post("/admin/users/sync", json={"email": identity.email}, headers=AUTH)
    not_found = admin_client.post("/admin/users/sync", json={"email": "nobody@example.com"}, headers=AUTH)

    assert found.json()["status"] == "synced"
    assert found.json()["created"] is True
    assert not_found.json()["status"] == "not_found"


def test_patch_role_triggers_role_sync_and_provider_task(
    admin_client: TestClient,
    repository,
    role_sync,
    operator,
) -> None:
    user = repository.add_user(external_id="ext-promote", role="standard")

    response = admin_client.patch(f"/admin/users/{user.id}", json={"role": "editor"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["role_changed"] is True
    assert body["user"]["role"] == "editor"
    assert body["user"]["content_identity_id"] == "cms-9"
    assert body["role_sync"]["status"] == "provisioned"
    assert role_sync.calls == [(user.id, "editor")]
    [task] = repository.tasks.values()
    assert task.kind == "sync_external_role"
    assert task.payload["role"] == "editor"


def test_patch_without_changes_does_not_sync(admin_client: TestClient, repository, role_sync, operator) -> None:
    user = repository.add_user(external_id="ext-same", role="editor")

    response = admin_client.patch(f"/admin/users/{user.id}", json={"role": "editor"}, headers=AUTH)
    missing = admin_client.patch("/admin/users/999", json={"is_active": False}, headers=AUTH)
    invalid = admin_client.patch(f"/admin/users/{user.id}", json={"role": "superuser"}, headers=AUTH)

    assert response.json()["role_changed"] is False
    assert role_sync.calls == []
    assert repository.tasks == {}
    assert missing.status_code == 404
    assert invalid.status_code == 422


def test_delete_user_enqueues_provider_deletion(admin_client: TestClient, repository, operator) -> None:
    user = repository.add_user(external_id="ext-remove")

    response = admin_client.delete(f"/admin/users/{user.id}", headers=AUTH)
    self_delete = admin_client.delete(f"/admin/users/{operator.id}", headers=AUTH)
    tasks = admin_client.get("/admin/downstream-tasks", params={"status": "queued"}, headers=AUTH)

    assert response.status_code == 200
    assert user.id not in repository.users
    assert self_delete.status_code == 409
    assert [(task["kind"], task["target_id"]) for task in tasks.json()] == [
        ("delete_external_identity", "ext-remove")
    ]


def test_worker_endpoints_process_tasks(admin_client: TestClient, repository, external_store) -> None:
    user = repository.add_user(external_id="ext-worker")
    asyncio.run(repository.delete_user(user_id=user.id))

    unauthorized = admin_client.post("/reconciliation/downstream-tasks/process")
    processed = admin_client.post(
        "/reconciliation/downstream-tasks/process",
        params={"limit": 5},
        headers=WORKER_HEADERS,
    )
    reconciled = admin_client.post("/reconciliation/run", headers=WORKER_HEADERS)

    assert unauthorized.status_code == 401
    assert processed.json() == {"claimed": 1, "done": 1, "retried": 0, "dead_lettered": 0}
    assert external_store.deleted == ["ext-worker"]
    assert reconciled.status_code == 200
    assert reconciled.json()["full_sweep"] is None


def test_list_users_filters_and_paginates(admin_client: TestClient, repository, operator) -> None:
    repository.add_user(external_id="ext-ada", email="ada@example.com", first_name="Ada", role="writer")
    repository.add_user(external_id="ext-grace", email="grace@example.com", first_name="Grace", role="editor")
    repository.add_user(external_id="ext-off", email="off@example.com", role="writer", is_active=False)

    everyone = admin_client.get("/admin/users", headers=AUTH)
    by_search = admin_client.get("/admin/users", params={"search": "ADA"}, headers=AUTH)
    writers = admin_client.get("/admin/users", params={"role": "writer", "is_active": "true"}, headers=AUTH)
    page = admin_client.get("/admin/users", params={"limit": 2, "offset": 1}, headers=AUTH)
    bad_role = admin_client.get("/admin/users", params={"role": "superuser"}, headers=AUTH)

    assert everyone.status_code == 200
    assert len(everyone.json()) == 4
    assert [user["email"] for user in by_search.json()] == ["ada@example.com"]
    assert [user["external_id"] for user in writers.json()] == ["ext-ada"]
    assert len(page.json()) == 2
    assert bad_role.status_code == 422


def test_get_user_exposes_lockout_and_content_identity(admin_client: TestClient, repository, operator) -> None:
    user = repository.add_user(
        external_id="ext-locked",
        role="writer",
        failed_attempts=5,
        content_identity_id="cms-42",
    )

    found = admin_client.get(f"/admin/users/{user.id}", headers=AUTH)
    missing = admin_client.get("/admin/users/999", headers=AUTH)

    assert found.status_code == 200
    assert found.json()["failed_attempts"] == 5
    assert found.json()["content_identity_id"] == "cms-42"
    assert missing.status_code == 404


def test_user_reads_require_admin(admin_client: TestClient, repository, monkeypatch) -> None:
    repository.add_user(external_id="editor-1", email="editor@example.com", role="editor")
    _mock_supabase_user(monkeypatch, {"id": "editor-1", "email": "editor@example.com"})

    assert admin_client.get("/admin/users", headers=AUTH).status_code == 403
    assert admin_client.get("/admin/users/1", headers=AUTH).status_code == 403
