from __future__ import annotations

import hashlib
from typing import Any

import pytest
from fastapi.testclient import TestClient

from driftwatch.core.config import get_settings
from driftwatch.main import app
from driftwatch.services.backlog import BacklogQueryEngine, get_backlog_engine
from driftwatch.services.fetcher import FetchError, FetchResult
from driftwatch.services.models import ContentMonitor
from driftwatch.services.repository import get_repository
from driftwatch.services.sessions import SessionCorrelator
from driftwatch.services.store import InMemoryRecordStore
from driftwatch.services.workflow import WorkflowRouter, get_workflow_router

S0 = "line a\nline b\nline c\nline d"
S1 = "line a\nline b\nline c\nline e"

VIEWER_HEADERS = {"X-Operator-Id": "vera", "X-API-Key": "viewer-key"}
OPERATOR_HEADERS = {"X-Operator-Id": "otto", "X-API-Key": "operator-key"}
ADMIN_HEADERS = {"X-Operator-Id": "ada", "X-API-Key": "admin-key"}


def _key_entry(operator_id: str, role: str, key: str) -> str:
    return f"{operator_id}:{role}:{hashlib.sha256(key.encode('utf-8')).hexdigest()}"


class QueueFetcher:
    def __init__(self) -> None:
        self.outcomes: dict[str, list[Any]] = {}

    async def fetch_snapshot(self, monitor: ContentMonitor) -> FetchResult:
        outcomes = self.outcomes.get(monitor.id) or [monitor.snapshot]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return FetchResult(snapshot=outcome)


class SilentNotifier:
    async def notify(self, alert: Any, monitor: ContentMonitor) -> str | None:
        return None


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(
        "DW_OPERATOR_API_KEYS",
        ",".join(
            [
                _key_entry("vera", "viewer", "viewer-key"),
                _key_entry("otto", "operator", "operator-key"),
                _key_entry("ada", "admin", "admin-key"),
            ]
        ),
    )
    get_settings.cache_clear()

    store = InMemoryRecordStore()
    fetcher = QueueFetcher()
    router = WorkflowRouter(
        store=store,
        fetcher=fetcher,
        notifier=SilentNotifier(),
        correlator=SessionCorrelator(),
    )
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_workflow_router] = lambda: router
    app.dependency_overrides[get_backlog_engine] = lambda: BacklogQueryEngine(store)

    yield TestClient(app), fetcher

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _create_monitor(client: TestClient, name: str = "jobs") -> dict[str, Any]:
    response = client.post(
        "/monitors",
        json={"code": "ACME", "content_type": "listing", "name": name, "url": "https://acme.example/jobs"},
        headers=OPERATOR_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def test_requests_without_valid_credentials_are_rejected(api) -> None:
    client, _ = api

    assert client.get("/backlog/reviews").status_code == 401
    assert client.get("/backlog/reviews", headers={"X-Operator-Id": "vera", "X-API-Key": "wrong"}).status_code == 401
    assert client.get("/backlog/reviews", headers={"X-Operator-Id": "nobody", "X-API-Key": "viewer-key"}).status_code == 401


def test_roles_limit_what_operators_may_change(api) -> None:
    client, _ = api

    assert client.get("/backlog/reviews", headers=VIEWER_HEADERS).status_code == 200
    assert client.patch("/reviews/missing", json={"status": "REJECTED"}, headers=VIEWER_HEADERS).status_code == 403
    assert client.post("/sweeps", headers=OPERATOR_HEADERS).status_code == 403
    assert client.post(
        "/monitors",
        json={"code": "ACME", "content_type": "listing", "name": "jobs"},
        headers=VIEWER_HEADERS,
    ).status_code == 403


def test_registering_the_same_monitor_twice_conflicts(api) -> None:
    client, _ = api

    created = _create_monitor(client)
    assert created["status"] == "NEW"
    assert created["guid"] == "listing-ACME-jobs"
    assert "snapshot" not in created

    duplicate = client.post(
        "/monitors",
        json={"code": "ACME", "content_type": "listing", "name": "jobs"},
        headers=OPERATOR_HEADERS,
    )
    assert duplicate.status_code == 409


def test_sweep_review_and_alert_flow_over_http(api) -> None:
    client, fetcher = api
    monitor = _create_monitor(client)
    fetcher.outcomes[monitor["id"]] = [S0, S1]

    baseline = client.post("/sweeps", headers=ADMIN_HEADERS)
    assert baseline.status_code == 200
    assert baseline.json()["monitors_processed"] == 1
    assert client.get(f"/monitors/{monitor['id']}", headers=VIEWER_HEADERS).json()["status"] == "PENDING"

    drift = client.post("/sweeps", headers=ADMIN_HEADERS).json()
    assert drift["changes_found"] == 1
    assert drift["reviews_opened"] == 1

    backlog = client.get("/backlog/reviews", params={"code": "ACME", "status": "NEW"}, headers=VIEWER_HEADERS)
    assert backlog.status_code == 200
    page = backlog.json()
    assert page["total"] == 1
    review = page["items"][0]
    assert review["kind"] == "review"
    assert review["session_id"] == drift["session"]

    changes = client.get("/backlog/changes", params={"monitor_id": monitor["id"]}, headers=VIEWER_HEADERS).json()
    assert changes["items"][0]["snapshot_after"] == S1

    patched = client.patch(
        f"/reviews/{review['id']}",
        json={"status": "CONFIRMED", "substantive": True, "notes": "salary removed"},
        headers=OPERATOR_HEADERS,
    )
    assert patched.status_code == 200
    assert patched.json()["status"] == "CONFIRMED"
    assert patched.json()["notes"] == "salary removed"
    assert client.get(f"/monitors/{monitor['id']}", headers=VIEWER_HEADERS).json()["status"] == "ALERT"

    alerts = client.get("/backlog/alerts", headers=VIEWER_HEADERS).json()["items"]
    assert len(alerts) == 1
    resolved = client.patch(f"/alerts/{alerts[0]['id']}", json={"status": "RESOLVED"}, headers=OPERATOR_HEADERS)
    assert resolved.status_code == 200
    assert client.get(f"/monitors/{monitor['id']}", headers=VIEWER_HEADERS).json()["status"] == "COMPLETED"

    reopened = client.patch(f"/reviews/{review['id']}", json={"status": "NEW"}, headers=OPERATOR_HEADERS)
    assert reopened.status_code == 409


def test_failure_acknowledgement_and_restart(api) -> None:
    client, fetcher = api
    monitor = _create_monitor(client)
    fetcher.outcomes[monitor["id"]] = [FetchError("timeout")]

    report = client.post("/sweeps", headers=ADMIN_HEADERS).json()
    assert report["failures_recorded"] == 1

    failures = client.get("/backlog/failures", params={"session_id": report["session"]}, headers=VIEWER_HEADERS).json()
    failure = failures["items"][0]
    assert failure["reason"] == "FETCH"

    acked = client.patch(f"/failures/{failure['id']}", json={"status": "ACKNOWLEDGED"}, headers=OPERATOR_HEADERS)
    assert acked.status_code == 200
    assert acked.json()["reviewed_at"] is not None

    restarted = client.post(f"/monitors/{monitor['id']}/restart", headers=OPERATOR_HEADERS)
    assert restarted.status_code == 200
    assert restarted.json()["status"] == "COMPLETED"
    assert restarted.json()["executed_at"] is None

    paused = client.patch(f"/monitors/{monitor['id']}", json={"active": False}, headers=OPERATOR_HEADERS)
    assert paused.status_code == 200
    assert paused.json()["active"] is False
    assert client.post("/sweeps", headers=ADMIN_HEADERS).json()["monitors_processed"] == 0


def test_backlog_rejects_unknown_status_text(api) -> None:
    client, _ = api

    assert client.get("/backlog/reviews", params={"status": "new"}, headers=VIEWER_HEADERS).status_code == 422
    assert client.get("/backlog/alerts", params={"status": "ARCHIVED"}, headers=VIEWER_HEADERS).status_code == 422
    assert client.get("/backlog/changes", params={"status": "NEW"}, headers=VIEWER_HEADERS).status_code == 422
    assert client.get("/backlog/monitors", headers=VIEWER_HEADERS).status_code == 422


def test_unknown_records_return_not_found(api) -> None:
    client, _ = api

    assert client.get("/monitors/missing", headers=VIEWER_HEADERS).status_code == 404
    assert client.patch("/alerts/missing", json={"status": "RESOLVED"}, headers=OPERATOR_HEADERS).status_code == 404
    assert client.post("/monitors/missing/restart", headers=OPERATOR_HEADERS).status_code == 404
