"""
HTTP surface: internal auth, connection lifecycle and scheduled-job routes.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_KEY_HEX
from sessionkeeper.core.config import Settings
from sessionkeeper.core.container import build_container
from sessionkeeper.main import create_app
from sessionkeeper.services.collaborators import SinkResult
from sessionkeeper.services.connections import Platform

API_KEY = "internal-test-key"
AUTH = {"X-API-Key": API_KEY}


class FlagValidator:
    def __init__(self):
        self.valid = True

    async def check(self, tokens):
        return self.valid


@pytest.fixture
def validator():
    return FlagValidator()


@pytest.fixture
def settings():
    return Settings(
        ENCRYPTION_KEY=TEST_KEY_HEX,
        API_INTERNAL_KEY=API_KEY,
        DATABASE_URL="sqlite://",
        SCHEDULER_ENABLED=False,
        INTER_JOB_DELAY_SECONDS=0,
    )


@pytest.fixture
def container(settings, validator):
    sink = AsyncMock()
    sink.write.return_value = SinkResult(0)
    return build_container(settings, validators={Platform.MAVELY: validator}, sink=sink)


@pytest.fixture
def client(settings, container):
    with TestClient(create_app(settings, container)) as c:
        yield c


def _connect(client, user="u1", platform="mavely", **body):
    body.setdefault("access_token", "tok-" + user)
    body.setdefault("expires_at", (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat())
    return client.put(f"/connections/{platform}/{user}", json=body, headers=AUTH)


def test_healthz_is_public(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_readyz_reports_background_state(client):
    r = client.get("/readyz")
    assert r.json() == {"ok": True, "background_jobs": False}


@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
def test_internal_routes_need_the_key(client, headers):
    r = client.get("/connections/MAVELY/u1/status", headers=headers)
    assert r.status_code == 401


def test_ip_allow_list(settings, container):
    settings.INTERNAL_ALLOWED_IPS = ["10.0.0.0/8"]
    with TestClient(create_app(settings, container)) as c:
        r = c.get("/connections/MAVELY/u1/status", headers=AUTH)
        assert r.status_code == 403
        r = c.get("/connections/MAVELY/u1/status", headers={**AUTH, "X-Forwarded-For": "10.1.2.3"})
        assert r.status_code == 200


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"


def test_connect_status_tokens_disconnect(client):
    r = client.get("/connections/MAVELY/u1/status", headers=AUTH)
    assert r.json()["status"] == "NOT_FOUND"
    assert client.get("/connections/MAVELY/u1/tokens", headers=AUTH).status_code == 404

    r = _connect(client, id_token="idt", metadata={"sessionCookie": "c"})
    assert r.status_code == 200
    assert r.json()["connected"] is True

    r = client.get("/connections/MAVELY/u1/tokens", headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert (body["access_token"], body["id_token"]) == ("tok-u1", "idt")
    assert body["metadata"]["sessionCookie"] == "c"

    r = client.delete("/connections/MAVELY/u1", headers=AUTH)
    assert r.json()["status"] == "DISCONNECTED"
    assert client.get("/connections/MAVELY/u1/tokens", headers=AUTH).status_code == 409
    assert client.delete("/connections/MAVELY/ghost", headers=AUTH).status_code == 404


def test_unknown_platform_is_400(client):
    r = client.get("/connections/MYSPACE/u1/status", headers=AUTH)
    assert r.status_code == 400
    assert "LTK" in r.json()["detail"]


def test_connect_validation(client):
    assert _connect(client, access_token="").status_code == 422


def test_login_failure_report(client):
    _connect(client)
    r = client.post("/connections/MAVELY/u1/error", json={"code": "BLOCKED", "message": "captcha"},
                    headers=AUTH)
    assert r.status_code == 200
    assert r.json()["status"] == "ERROR"
    assert r.json()["error"] == "BLOCKED: captcha"


def test_manual_refresh(client, validator):
    _connect(client)
    r = client.post("/connections/MAVELY/u1/refresh", headers=AUTH)
    assert r.json()["success"] is True
    assert r.json()["outcome"] == "renewed"

    validator.valid = False
    r = client.post("/connections/MAVELY/u1/refresh", headers=AUTH)
    assert r.json()["success"] is False
    assert r.json()["outcome"] == "invalidated"
    status = client.get("/connections/MAVELY/u1/status", headers=AUTH).json()
    assert status["status"] == "ERROR"

    r = client.post("/connections/MAVELY/u1/refresh", headers=AUTH)
    assert r.json()["outcome"] == "skipped"


def test_enable_and_disable_job(client, container):
    _connect(client)
    r = client.post("/scheduled/MAVELY/u1/enable",
                    json={"spreadsheet_id": "sheet-1", "sheet_name": "Daily"}, headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["enabled"] is True
    assert body["schedule"] == "0 2 * * *"
    assert body["next_run_at"] is not None
    assert container.store.get("u1", "MAVELY").scheduled_job.destination_label == "Daily"

    r = client.post("/scheduled/MAVELY/u1/disable", headers=AUTH)
    assert r.json()["enabled"] is False
    assert r.json()["destination_id"] == "sheet-1"
    assert r.json()["next_run_at"] is None


def test_enable_rejects_bad_cron(client):
    _connect(client)
    r = client.post("/scheduled/MAVELY/u1/enable",
                    json={"spreadsheet_id": "sheet-1", "schedule": "every day"}, headers=AUTH)
    assert r.status_code == 400


def test_job_routes_on_missing_connection(client):
    r = client.post("/scheduled/MAVELY/ghost/enable", json={"spreadsheet_id": "s"}, headers=AUTH)
    assert r.status_code == 404
    assert client.post("/scheduled/MAVELY/ghost/disable", headers=AUTH).status_code == 404
    _connect(client)
    assert client.post("/scheduled/MAVELY/u1/disable", headers=AUTH).status_code == 404


def test_run_now_reports_each_job(client):
    _connect(client)
    client.post("/scheduled/MAVELY/u1/enable",
                json={"spreadsheet_id": "s", "schedule": "* * * * *"}, headers=AUTH)
    r = client.post("/scheduled/run", headers=AUTH)
    assert r.status_code == 200
    jobs = r.json()["jobs"]
    assert len(jobs) == 1
    # no extractor registered for MAVELY in this container
    assert jobs[0]["outcome"] == "failed"
    assert "no extractor registered" in jobs[0]["error"]
