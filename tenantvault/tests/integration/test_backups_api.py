from __future__ import annotations

from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from tenantvault.apps.api.deps import get_controller
from tenantvault.apps.api.main import create_app
from tenantvault.core.config import get_settings
from tenantvault.services.backup.handlers import ORG_BACKUP_JOB, register_backup_handlers
from tenantvault.services.backup.lifecycle import BackupLifecycleController
from tenantvault.services.jobs.registry import job_handler_registry
from tenantvault.services.resilience import get_job_bulkhead
from tenantvault.services.storage.local import LocalObjectStorage
from tenantvault.tests.utils.fakes import (
    FakeProcessRunner,
    InMemoryBackupRecordStore,
    InMemoryTableGateway,
    build_controller,
)


MEMBER = {"X-User-Id": "user-1", "X-Tenant-Id": "org-1", "X-Role": "admin"}
OUTSIDER = {"X-User-Id": "user-9", "X-Tenant-Id": "org-2", "X-Role": "admin"}
SUPERADMIN = {"X-User-Id": "root", "X-Tenant-Id": "platform", "X-Role": "superadmin"}


def _app_with(controller: BackupLifecycleController):
    # Route both the API and inline job handlers through the same in-memory controller.
    app = create_app()
    register_backup_handlers(controller_factory=lambda: controller)
    app.dependency_overrides[get_controller] = lambda: controller
    return app


@pytest.fixture
def store() -> InMemoryBackupRecordStore:
    return InMemoryBackupRecordStore()


@pytest.fixture
def gateway() -> InMemoryTableGateway:
    return InMemoryTableGateway(
        {
            "announcements": [{"id": "a1", "org_id": "org-1", "title": "Welcome", "body": "Hi"}],
            "folders": [{"id": "f1", "org_id": "org-1", "name": "Docs"}],
        }
    )


@pytest.fixture
def runner() -> FakeProcessRunner:
    return FakeProcessRunner(stdout=b"PGDMP")


@pytest.fixture
def client_factory(tmp_path: Path, store, gateway, runner):
    controller = build_controller(tmp_path, gateway=gateway, store=store, runner=runner)

    def _client() -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=_app_with(controller)), base_url="http://test")

    return _client


async def _create_backup(client: AsyncClient, body: dict | None = None) -> dict:
    response = await client.post("/v1/orgs/org-1/backups", json=body or {}, headers=MEMBER)
    assert response.status_code == 202, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_create_list_get_backup(client_factory, store) -> None:
    async with client_factory() as client:
        created = await _create_backup(client)
        assert created["message"] == "Backup started"

        # Inline execution finishes the job before the response returns.
        response = await client.get(f"/v1/orgs/org-1/backups/{created['id']}", headers=MEMBER)
        assert response.status_code == 200
        payload = response.json()
        assert payload["meta"]["api_version"] == "v1"
        record = payload["data"]
        assert record["status"] == "completed"
        assert record["metadata"]["progress"] == 100
        assert record["metadata"]["row_counts"]["announcements"] == 1

        response = await client.get("/v1/orgs/org-1/backups?page=1&page_size=10", headers=MEMBER)
        listing = response.json()["data"]
        assert [item["id"] for item in listing["items"]] == [created["id"]]
        assert listing["pagination"]["total_count"] == 1
        assert listing["pagination"]["has_next"] is False

        response = await client.get(f"/v1/jobs/{created['job_id']}", headers=MEMBER)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected(client_factory) -> None:
    async with client_factory() as client:
        response = await client.get("/v1/orgs/org-1/backups")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_other_tenants_cannot_see_backups(client_factory) -> None:
    async with client_factory() as client:
        created = await _create_backup(client)
        response = await client.get("/v1/orgs/org-1/backups", headers=OUTSIDER)
        assert response.status_code == 403
        # Asking through another organization's path reports the backup as missing.
        response = await client.get(f"/v1/orgs/org-2/backups/{created['id']}", headers=OUTSIDER)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        response = await client.get(f"/v1/orgs/org-1/backups/{created['id']}", headers=SUPERADMIN)
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_encrypted_backup_requires_password(client_factory) -> None:
    async with client_factory() as client:
        response = await client.post("/v1/orgs/org-1/backups", json={"encrypt": True}, headers=MEMBER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PASSWORD_REQUIRED"


@pytest.mark.asyncio
async def test_backup_limit_is_enforced(client_factory, monkeypatch) -> None:
    monkeypatch.setenv("BACKUP_MAX_COUNT", "1")
    get_settings.cache_clear()
    async with client_factory() as client:
        await _create_backup(client)
        response = await client.post("/v1/orgs/org-1/backups", json={}, headers=MEMBER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BACKUP_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_encrypted_download(client_factory) -> None:
    async with client_factory() as client:
        created = await _create_backup(client, {"encrypt": True, "password": "hunter2"})
        url = f"/v1/orgs/org-1/backups/{created['id']}/download"

        response = await client.get(url, headers=MEMBER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PASSWORD_REQUIRED"

        response = await client.get(url, headers={**MEMBER, "X-Backup-Password": "wrong"})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "DECRYPTION_FAILED"
        assert error["message"] == "Incorrect password"

        response = await client.get(url, headers={**MEMBER, "X-Backup-Password": "hunter2"})
        assert response.status_code == 200
        assert response.content.startswith(b"PK")
        assert f"backup-{created['id']}.zip" in response.headers["content-disposition"]


@pytest.mark.asyncio
async def test_restore_confirmation_and_strategies(client_factory, gateway) -> None:
    async with client_factory() as client:
        created = await _create_backup(client)
        url = f"/v1/orgs/org-1/backups/{created['id']}/restore"

        response = await client.post(url, json={"strategy": "overwrite"}, headers=MEMBER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CONFIRMATION_REQUIRED"

        response = await client.post(url, json={"strategy": "skip"}, headers=MEMBER)
        assert response.status_code == 200
        result = response.json()["data"]
        assert result["success"] is True
        assert result["rows_restored"] == 0
        assert result["rows_skipped"] == 2

        gateway.tables["announcements"]["a1"]["title"] = "Edited"
        response = await client.post(
            url, json={"strategy": "wipe_and_replace", "confirmation": "RESTORE"}, headers=MEMBER
        )
        assert response.status_code == 200
        assert response.json()["data"]["rows_restored"] == 2
        assert gateway.tables["announcements"]["a1"]["title"] == "Welcome"


@pytest.mark.asyncio
async def test_async_restore_returns_job(client_factory) -> None:
    async with client_factory() as client:
        created = await _create_backup(client)
        response = await client.post(
            f"/v1/orgs/org-1/backups/{created['id']}/restore",
            json={"strategy": "skip", "run_async": True},
            headers=MEMBER,
        )
        assert response.status_code == 202
        job_id = response.json()["data"]["job_id"]
        response = await client.get(f"/v1/jobs/{job_id}", headers=MEMBER)
        job = response.json()["data"]
        assert job["status"] == "completed"
        assert job["output"]["success"] is True


@pytest.mark.asyncio
async def test_delete_backup(client_factory, store, tmp_path: Path) -> None:
    async with client_factory() as client:
        created = await _create_backup(client)
        storage_path = store.records[created["id"]].storage_path
        response = await client.delete(f"/v1/orgs/org-1/backups/{created['id']}", headers=MEMBER)
        assert response.status_code == 204
        assert created["id"] not in store.records
        assert not await LocalObjectStorage(tmp_path).exists(storage_path)
        response = await client.get(f"/v1/orgs/org-1/backups/{created['id']}", headers=MEMBER)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_system_backups_are_superadmin_only(client_factory, runner) -> None:
    async with client_factory() as client:
        response = await client.post("/v1/admin/system-backups", json={}, headers=MEMBER)
        assert response.status_code == 403

        response = await client.post("/v1/admin/system-backups", json={}, headers=SUPERADMIN)
        assert response.status_code == 202
        backup_id = response.json()["data"]["id"]

        response = await client.get(f"/v1/admin/system-backups/{backup_id}", headers=SUPERADMIN)
        record = response.json()["data"]
        assert record["status"] == "completed"
        assert record["format"] == "database-dump"
        assert record["storage_path"].endswith(".dump")

        restore_url = f"/v1/admin/system-backups/{backup_id}/restore"
        response = await client.post(restore_url, json={}, headers=SUPERADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CONFIRMATION_REQUIRED"

        response = await client.post(restore_url, json={"confirmation": "RESTORE"}, headers=SUPERADMIN)
        assert response.status_code == 200
        assert response.json()["data"]["files_restored"] == 0
        assert response.json()["data"]["errors"] == []
        assert runner.calls[-1]["args"][0] == "pg_restore"

        response = await client.get("/v1/admin/system-backups", headers=SUPERADMIN)
        assert response.json()["data"]["pagination"]["total_count"] == 1


@pytest.mark.asyncio
async def test_failed_system_backup_is_visible(client_factory, runner) -> None:
    runner.returncode = 1
    runner.stderr = b"connection refused"
    async with client_factory() as client:
        response = await client.post("/v1/admin/system-backups", json={}, headers=SUPERADMIN)
        assert response.status_code == 202
        data = response.json()["data"]

        response = await client.get(f"/v1/admin/system-backups/{data['id']}", headers=SUPERADMIN)
        record = response.json()["data"]
        assert record["status"] == "failed"
        assert "connection refused" in record["metadata"]["error"]

        response = await client.get(f"/v1/jobs/{data['job_id']}", headers=SUPERADMIN)
        assert response.json()["data"]["error"]["code"] == "SYSTEM_BACKUP_FAILED"


@pytest.mark.asyncio
async def test_health_reports_registered_job_types(client_factory) -> None:
    async with client_factory() as client:
        response = await client.get("/v1/health")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "ok"
        assert data["queue_depth"] == 0
        assert "backups:org-create" in data["job_types"]
        assert "system:backup-create" in data["job_types"]
        assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_saturated_backup_capacity_returns_503_without_a_record(client_factory, store) -> None:
    async with client_factory() as client:
        # The app registers handlers on creation; saturate after that.
        config = job_handler_registry.get(ORG_BACKUP_JOB)
        bulkhead = get_job_bulkhead(ORG_BACKUP_JOB, config.concurrency)
        leases = [await bulkhead.acquire() for _ in range(bulkhead.limit)]
        try:
            response = await client.post("/v1/orgs/org-1/backups", json={}, headers=MEMBER)
        finally:
            for lease in leases:
                lease.release()
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

        response = await client.get("/v1/orgs/org-1/backups", headers=MEMBER)
        assert response.json()["data"]["items"] == []
    assert store.records == {}
