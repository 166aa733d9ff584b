"""Integration tests for /sync routes."""
import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from azsync.api.main import create_app
from azsync.db.engine import get_session
from azsync.models.sync import COMPLETED, RUNNING, SyncJob, SyncLog
from azsync.sync.continuation import QueueTransport
from azsync.sync.engine import SyncEngine

METRICS_RESPONSE = {"value": [{
    "name": {"value": "cpu_percent"},
    "timeseries": [{"data": [
        {"timeStamp": "2026-01-12T10:00:00Z", "average": 1.0},
        {"timeStamp": "2026-01-12T10:05:00Z", "average": 2.0},
    ]}],
}]}


@pytest.fixture(name="transport")
def transport_fixture():
    return QueueTransport()


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(engine, credentials, transport):
    azure = AsyncMock()
    azure.get_metrics = AsyncMock(return_value=METRICS_RESPONSE)
    return SyncEngine(engine, credentials, azure, transport, chunk_delay_seconds=0)


@pytest.fixture(name="client")
def client_fixture(engine, sync_engine):
    app = create_app(sync_engine=sync_engine)

    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as c:
        yield c


class TestSyncEntryPoint:
    def test_historical_sync_returns_progress_id(self, client, tenant, sql_databases, transport):
        resp = client.post("/sync", json={
            "action": "historical-sync", "sync_type": "metrics", "tenant_id": tenant.id, "days": 30,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["totalUnits"] == 3
        assert isinstance(body["progressId"], int)
        payload, _ = transport.next()
        assert payload.chunk_index == 0

    def test_continue_runs_chunk_in_background(self, client, engine, tenant, sql_databases, transport):
        started = client.post("/sync", json={
            "action": "historical-sync", "sync_type": "metrics", "tenant_id": tenant.id,
        }).json()
        payload, _ = transport.next()

        resp = client.post("/sync", json=payload.model_dump(mode="json"))

        assert resp.status_code == 200
        assert resp.json()["progressId"] == started["progressId"]
        # TestClient runs background tasks before returning
        with Session(engine) as s:
            job = s.get(SyncJob, started["progressId"])
        assert job.completed_chunks == 1
        assert job.records_synced == 2
        assert transport.next()[0].chunk_index == 1

    def test_continue_requires_service_token_when_configured(self, client, tenant, sql_databases, transport):
        client.post("/sync", json={"action": "historical-sync", "sync_type": "metrics", "tenant_id": tenant.id})
        payload, _ = transport.next()

        with patch("azsync.api.routes.sync.get_settings") as mock_settings:
            mock_settings.return_value.service_token = "s3cret"
            denied = client.post("/sync", json=payload.model_dump(mode="json"))
            allowed = client.post(
                "/sync", json=payload.model_dump(mode="json"),
                headers={"Authorization": "Bearer s3cret"},
            )

        assert denied.status_code == 401
        assert allowed.status_code == 200

    def test_bounded_sync_returns_summary(self, client, tenant, sql_databases):
        resp = client.post("/sync", json={"action": "sync", "sync_type": "metrics", "tenant_id": tenant.id})
        assert resp.status_code == 200
        body = resp.json()
        assert body["syncedCount"] == 6
        assert body["processedCount"] == 3
        assert body["timedOut"] is False

    def test_invalid_body_is_400(self, client):
        resp = client.post("/sync", json={"action": "explode"})
        assert resp.status_code == 400

    def test_days_over_maximum_is_400(self, client, tenant, sql_databases):
        resp = client.post("/sync", json={
            "action": "historical-sync", "sync_type": "sql-insights", "tenant_id": tenant.id, "days": 60,
        })
        assert resp.status_code == 400
        assert "31" in resp.json()["detail"]

    def test_unknown_tenant_is_404(self, client):
        resp = client.post("/sync", json={"action": "sync", "sync_type": "costs", "tenant_id": 404})
        assert resp.status_code == 404


class TestProgressRoutes:
    def test_progress_missing_job(self, client):
        resp = client.get("/sync/progress/999")
        assert resp.status_code == 404

    def test_progress_reports_chunks(self, client, tenant, sql_databases):
        started = client.post("/sync", json={
            "action": "historical-sync", "sync_type": "metrics", "tenant_id": tenant.id,
        }).json()
        resp = client.get(f"/sync/progress/{started['progressId']}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == RUNNING
        assert body["total_chunks"] == 3
        assert [c["status"] for c in body["chunks"]] == ["pending"] * 3

    def test_list_jobs_newest_first(self, client, engine):
        with Session(engine) as s:
            s.add(SyncJob(tenant_id=1, sync_type="metrics", status=COMPLETED))
            s.add(SyncJob(tenant_id=2, sync_type="costs", status=RUNNING))
            s.commit()
        resp = client.get("/sync/progress")
        assert [j["sync_type"] for j in resp.json()] == ["costs", "metrics"]
        resp = client.get("/sync/progress", params={"status": COMPLETED})
        assert [j["tenant_id"] for j in resp.json()] == [1]

    def test_logs(self, client, engine):
        with Session(engine) as s:
            s.add(SyncLog(
                tenant_id=1, sync_type="costs", status=COMPLETED,
                started_at=datetime(2026, 1, 15, 4, 0), records_processed=9,
                details=json.dumps({"timedOut": False}),
            ))
            s.commit()
        resp = client.get("/sync/logs")
        assert resp.status_code == 200
        assert resp.json()[0]["records_processed"] == 9
        assert resp.json()[0]["details"] == {"timedOut": False}

    def test_reap(self, client, engine):
        with Session(engine) as s:
            s.add(SyncJob(tenant_id=1, sync_type="metrics", status=RUNNING,
                          started_at=datetime(2020, 1, 1)))
            s.commit()
        resp = client.post("/sync/reap")
        assert resp.json() == {"jobs": 1, "logs": 0, "total": 1}
