"""HTTP API tests against a SQLite queue store."""
import asyncio

import pytest
from fastapi.testclient import TestClient

from app.db import Database
from app.main import create_app

from conftest import sqlite_url


async def _prepare_store(url: str):
    database = Database(url)
    await database.connect(retries=1, timeout=5)
    await database.create_tables()
    await database.close()


@pytest.fixture
def client(tmp_path):
    url = sqlite_url(tmp_path)
    asyncio.run(_prepare_store(url))
    with TestClient(create_app(database_url=url, run_worker=False)) as test_client:
        yield test_client


@pytest.fixture
def disabled_client(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'queue.db'}"
    with TestClient(create_app(database_url=url, run_worker=False)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["queue_enabled"] is True
    assert client.get("/db-health").json()["status"] == "ok"


def test_create_and_fetch_job(client):
    response = client.post("/api/v1/jobs", json={
        "kind": "process-appointment",
        "payload": {"id": "A1", "patient_name": "Ana"},
    })

    assert response.status_code == 201
    job = response.json()
    assert job["state"] == "waiting"
    assert job["priority"] == 1
    assert job["attempts_made"] == 0

    fetched = client.get(f"/api/v1/jobs/{job['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["payload"] == {"id": "A1", "patient_name": "Ana"}


def test_create_job_with_unknown_kind(client):
    response = client.post("/api/v1/jobs", json={"kind": "unknown", "payload": {}})
    assert response.status_code == 422
    assert "No handler registered" in response.json()["detail"]


def test_create_job_with_negative_delay(client):
    response = client.post("/api/v1/jobs", json={"kind": "send-notification", "payload": {}, "delay": -5})
    assert response.status_code == 422


def test_missing_job(client):
    assert client.get("/api/v1/jobs/9999").status_code == 404


def test_list_and_stats(client):
    client.post("/api/v1/jobs", json={"kind": "process-appointment", "payload": {"id": 1}})
    client.post("/api/v1/jobs", json={"kind": "send-notification", "payload": {"type": "user_created"}})

    listed = client.get("/api/v1/jobs", params={"kind": "send-notification"}).json()
    assert [job["kind"] for job in listed] == ["send-notification"]

    assert client.get("/api/v1/jobs", params={"state": "bogus"}).status_code == 422

    stats = client.get("/api/v1/queue/stats").json()
    assert stats == {"waiting": 2, "active": 0, "completed": 0, "failed": 0}

    by_kind = client.get("/api/v1/queue/stats/kinds").json()
    assert by_kind["kinds"]["process-appointment"]["waiting"] == 1
    assert by_kind["total"]["waiting"] == 2


def test_reset_stale_jobs(client):
    response = client.post("/api/v1/admin/jobs/reset-stale", params={"timeout_seconds": 60})
    assert response.status_code == 200
    assert response.json() == {"requeued": 0, "failed": 0}


class TestWebhook:
    def test_requires_type_and_table(self, client):
        assert client.post("/api/v1/webhooks/supabase", json={"table": "appointments"}).status_code == 400
        assert client.post("/api/v1/webhooks/supabase", json={"type": "INSERT"}).status_code == 400

    def test_appointment_insert_creates_job(self, client):
        response = client.post("/api/v1/webhooks/supabase", json={
            "type": "INSERT",
            "table": "appointments",
            "schema": "public",
            "record": {"id": "A1", "status": "booked"},
            "old_record": None,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["job_ids"]) == 1

        job = client.get(f"/api/v1/jobs/{body['job_ids'][0]}").json()
        assert job["kind"] == "process-appointment"


class TestQueueDisabled:
    def test_api_still_serves(self, disabled_client):
        health = disabled_client.get("/health")
        assert health.status_code == 200
        assert health.json()["queue_enabled"] is False

    def test_queue_endpoints_report_unavailable(self, disabled_client):
        assert disabled_client.get("/api/v1/queue/stats").status_code == 503
        response = disabled_client.post("/api/v1/jobs", json={"kind": "process-appointment", "payload": {"id": 1}})
        assert response.status_code == 503

    def test_webhook_still_acknowledged(self, disabled_client):
        response = disabled_client.post("/api/v1/webhooks/supabase", json={
            "type": "INSERT",
            "table": "appointments",
            "record": {"id": "A1"},
        })
        assert response.status_code == 200
        assert response.json()["job_ids"] == []
