"""Tests for the HTTP surface using FastAPI's TestClient."""

import sqlite3
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import api.dependencies
import api.routes.health
import api.routes.sync
from api.main import app
from conftest import TEST_KEY, FakeCalendarClient, FakeScraper
from core.crypto import CredentialCipher
from core.database import RosterStore, UserDirectory, create_schema, get_connection
from services.sync import SyncOrchestrator

API_KEY = "test-api-key"
CRON_SECRET = "test-cron-secret"


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "roster-sync.db"
    conn = get_connection(path)
    create_schema(conn)
    conn.close()
    return path


@pytest.fixture
def fake_calendar():
    return FakeCalendarClient()


@pytest.fixture
def fake_scraper(sample_rows):
    return FakeScraper(sample_rows)


@pytest.fixture
def request_logs():
    return []


@pytest.fixture
def client(monkeypatch, db_path, fake_calendar, fake_scraper, request_logs):
    def open_connection():
        return get_connection(db_path)

    def build_orchestrator(conn, runner=None):
        return SyncOrchestrator(
            RosterStore(conn),
            UserDirectory(conn, CredentialCipher(TEST_KEY)),
            calendar_factory=lambda user: fake_calendar,
            scraper=fake_scraper,
            runner=runner,
            default_username="",
            default_password="",
            mutation_delay=0,
        )

    monkeypatch.setattr(api.dependencies, "ROSTER_API_KEY", API_KEY)
    monkeypatch.setattr(api.dependencies, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(api.dependencies, "open_connection", open_connection)
    monkeypatch.setattr(api.routes.health, "open_connection", open_connection)
    monkeypatch.setattr(api.routes.sync, "open_connection", open_connection)
    monkeypatch.setattr(api.routes.sync, "build_orchestrator", build_orchestrator)
    monkeypatch.setattr(api.routes.sync, "log_request", request_logs.append)
    return TestClient(app)


@pytest.fixture
def directory(db_path):
    conn = get_connection(db_path)
    yield UserDirectory(conn, CredentialCipher(TEST_KEY))
    conn.close()


def auth():
    return {"X-API-Key": API_KEY}


# =============================================================================
# HEALTH
# =============================================================================


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database_available"] is True


def test_health_reports_unavailable_database(client, monkeypatch):
    def broken():
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(api.routes.health, "open_connection", broken)
    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert "unable to open" in response.json()["error"]


# =============================================================================
# SYNC
# =============================================================================


def test_sync_requires_valid_api_key(client):
    response = client.post("/v1/sync", json={"person": "jdoe"}, headers={"X-API-Key": "nope"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "UNAUTHORIZED"


def test_sync_first_login(client, directory, request_logs):
    response = client.post("/v1/sync", json={"person": "jdoe", "credential": "secret"}, headers=auth())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["is_live"] is True
    assert len(body["entries"]) == 3
    assert body["reconciliation_status"] == "not_linked"
    assert directory.find("jdoe") is not None

    log = request_logs[-1]
    assert log.status_code == 200
    assert log.entries_returned == 3
    assert log.is_live is True


def test_sync_wrong_password_is_unauthorized(client, directory, request_logs):
    response = client.post("/v1/sync", json={"person": "jdoe", "credential": "wrong"}, headers=auth())

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "AUTHENTICATION_FAILED"
    assert directory.find("jdoe") is None
    assert request_logs[-1].status_code == 401


def test_sync_without_any_credential_is_a_bad_request(client):
    response = client.post("/v1/sync", json={"person": "nobody"}, headers=auth())

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MISSING_CREDENTIAL"


def test_sync_reconciles_after_the_response(client, directory, fake_calendar):
    user = directory.find_or_create("jdoe", "secret")
    directory.update_sync_state(user.id, calendar_mailbox="jdoe@example.org")

    response = client.post("/v1/sync", json={"person": "jdoe"}, headers=auth())

    assert response.status_code == 200
    assert response.json()["reconciliation_status"] == "scheduled"
    # TestClient runs background tasks before returning
    inserted = [c for c in fake_calendar.calls if c[0] == "insert"]
    assert len(inserted) == 3  # two entries plus the change report
    assert directory.find("jdoe").calendar_id is not None


def test_batch_requires_cron_secret(client):
    response = client.post("/v1/sync/batch", headers={"X-Cron-Secret": "wrong"})
    assert response.status_code == 401


def test_batch_sync(client, directory):
    user = directory.find_or_create("jdoe", "secret")
    directory.update_sync_state(user.id, last_sync_at=datetime.now(timezone.utc))

    response = client.post("/v1/sync/batch", headers={"X-Cron-Secret": CRON_SECRET})

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["results"] == [{"user": "jdoe", "status": "skipped", "reason": "Interval not reached"}]


# =============================================================================
# USERS
# =============================================================================


def test_settings_for_unknown_user(client):
    response = client.get("/v1/users/nobody/settings", headers=auth())

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_settings_defaults(client, directory):
    directory.find_or_create("jdoe", "secret")

    body = client.get("/v1/users/jdoe/settings", headers=auth()).json()

    assert body["sync_interval_minutes"] == 60
    assert body["calendar_linked"] is False
    assert body["last_sync_at"] is None


def test_interval_below_minimum_is_rejected(client, directory):
    directory.find_or_create("jdoe", "secret")

    response = client.put("/v1/users/jdoe/settings", json={"sync_interval_minutes": 15}, headers=auth())

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_update_settings(client, directory):
    user = directory.find_or_create("jdoe", "secret")
    directory.update_sync_state(user.id, calendar_mailbox="old@example.org", calendar_id="cal-old")

    response = client.put(
        "/v1/users/JDOE/settings",
        json={"sync_interval_minutes": 90, "calendar_mailbox": "jdoe@example.org"},
        headers=auth(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["sync_interval_minutes"] == 90
    assert body["calendar_linked"] is True
    # A different mailbox means a different calendar
    assert body["calendar_id"] is None


def test_unlink_calendar(client, directory):
    user = directory.find_or_create("jdoe", "secret")
    directory.update_sync_state(user.id, calendar_mailbox="jdoe@example.org", calendar_id="cal-1")

    response = client.delete("/v1/users/jdoe/calendar", headers=auth())

    assert response.status_code == 200
    assert response.json()["calendar_linked"] is False
    assert directory.find("jdoe").calendar_mailbox is None


def test_reset_user(client, directory):
    directory.find_or_create("jdoe", "secret")

    response = client.post("/v1/users/jdoe/reset", headers=auth())

    assert response.status_code == 200
    assert response.json() == {"success": True, "entries_deleted": 0, "users_deleted": 1}
    assert client.post("/v1/users/jdoe/reset", headers=auth()).status_code == 404


# =============================================================================
# REQUEST LOG
# =============================================================================


def test_request_log_is_persisted(db_path):
    from api.logging import RequestLog, log_request

    request_log = RequestLog(endpoint="/v1/sync", method="POST", person="jdoe", is_live=True)
    request_log.details.append(("diagnostic", "[t] Extracted rows"))
    request_log.finish(200)

    log_request(request_log, db_path)

    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM api_requests WHERE request_id = ?", (request_log.request_id,)).fetchone()
        details = conn.execute("SELECT detail_type, message FROM api_request_details").fetchall()
    finally:
        conn.close()
    assert row["status_code"] == 200
    assert row["is_live"] == 1
    assert row["person"] == "jdoe"
    assert [tuple(d) for d in details] == [("diagnostic", "[t] Extracted rows")]
