from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from newsletter.api.handlers.deps import ApiDeps
from newsletter.api.http_app import build_app
from newsletter.domain.errors import PersistenceError
from newsletter.domain.models import IdempotencyState
from newsletter.domain.subscribers import SubscriberEmail
from newsletter.domain.use_cases.publish import IssueDeliveryCoordinator
from newsletter.repositories.stub import InMemoryDeliveryStore, InMemorySubscriberDirectory, _IdempotencyRow
from newsletter.roles import validate_role
from newsletter.services.bootstrap import RuntimeContainer, build_runtime_container

ISSUE = {
    "title": "Issue #1",
    "html_content": "<p>Hello</p>",
    "text_content": "Hello",
    "idempotency_key": "k1",
}
ACTOR = {"X-Actor-Id": "admin-1"}


def _api_container(monkeypatch: pytest.MonkeyPatch) -> RuntimeContainer:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("EMAIL_BASE_URL", raising=False)
    container = build_runtime_container(validate_role("api"))
    assert isinstance(container.directory, InMemorySubscriberDirectory)
    container.directory.add(email="a@x.com", name="Reader A")
    container.directory.add(email="b@x.com", name="Reader B")
    container.directory.add(email="c@x.com", name="Reader C", confirmed=False)
    return container


def _client(container: RuntimeContainer) -> TestClient:
    app = build_app(
        role="api",
        run_id="integration-api",
        workers=container.workers,
        api_deps=container.api_deps,
    )
    return TestClient(app)


@pytest.mark.integration
def test_system_endpoints_are_available(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "role": "api", "mode": "in-memory"}
    assert ready.status_code == 200
    body = ready.json()
    assert body["worker_loop_enabled"] is False
    assert body["worker_loop_ready"] is True
    assert body["worker_metrics"]["workers"] == 0


@pytest.mark.integration
def test_publish_fans_out_to_confirmed_subscribers_once(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        first = client.post("/admin/newsletters", json=ISSUE, headers=ACTOR)
        assert first.status_code == 202
        accepted = first.json()
        assert accepted["status"] == "accepted"
        assert accepted["tasks_queued"] == 2
        assert accepted["message"] == "issue accepted for delivery"

        container.directory.add(email="d@x.com", name="Late Reader")  # type: ignore[attr-defined]
        retry = client.post(
            "/admin/newsletters",
            json={**ISSUE, "title": "Edited title"},
            headers=ACTOR,
        )
        assert retry.status_code == 202
        duplicate = retry.json()
        assert duplicate["status"] == "duplicate"
        assert duplicate["issue_id"] == accepted["issue_id"]
        assert duplicate["tasks_queued"] == 2

        deliveries = client.get("/admin/deliveries", params={"issue_id": accepted["issue_id"]})
        assert deliveries.status_code == 200
        items = deliveries.json()["items"]
        assert sorted(item["recipient"] for item in items) == ["a@x.com", "b@x.com"]
        assert {item["status"] for item in items} == {"pending"}
        assert {item["subject"] for item in items} == {"Issue #1"}
        assert "html_body" not in items[0]

        summary = client.get(f"/admin/issues/{accepted['issue_id']}/delivery-summary")
        assert summary.status_code == 200
        assert summary.json() == {
            "issue_id": accepted["issue_id"],
            "total": 2,
            "pending": 2,
            "claimed": 0,
            "done": 0,
            "quarantined": 0,
        }


@pytest.mark.integration
def test_publish_requires_actor_header(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        response = client.post("/admin/newsletters", json=ISSUE)

    assert response.status_code == 401
    assert container.store.idempotency == {}  # type: ignore[attr-defined]


@pytest.mark.integration
def test_publish_rejects_invalid_idempotency_key(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        too_long = client.post("/admin/newsletters", json={**ISSUE, "idempotency_key": "k" * 51}, headers=ACTOR)
        blank = client.post("/admin/newsletters", json={**ISSUE, "idempotency_key": " "}, headers=ACTOR)

    assert too_long.status_code == 400
    assert blank.status_code == 400
    assert container.store.idempotency == {}  # type: ignore[attr-defined]


@pytest.mark.integration
def test_publish_rejects_incomplete_content(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        missing = client.post(
            "/admin/newsletters",
            json={key: value for key, value in ISSUE.items() if key != "title"},
            headers=ACTOR,
        )
        whitespace = client.post("/admin/newsletters", json={**ISSUE, "text_content": "   "}, headers=ACTOR)

    assert missing.status_code == 422
    assert whitespace.status_code == 400


@pytest.mark.integration
def test_concurrent_duplicate_returns_conflict(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)
    store = container.store
    assert isinstance(store, InMemoryDeliveryStore)
    store.idempotency[("admin-1", "k1")] = _IdempotencyRow(
        actor_id="admin-1",
        key="k1",
        status=IdempotencyState.IN_PROGRESS,
    )

    with _client(container) as client:
        response = client.post("/admin/newsletters", json=ISSUE, headers=ACTOR)

    assert response.status_code == 409
    assert store.tasks == {}


@pytest.mark.integration
def test_store_outage_returns_service_unavailable() -> None:
    class _UnavailableDirectory:
        async def list_confirmed_subscribers(self) -> list[SubscriberEmail]:
            raise PersistenceError("list_confirmed_subscribers failed: connection refused")

    store = InMemoryDeliveryStore()
    api_deps = ApiDeps(
        store=store,
        directory=_UnavailableDirectory(),
        coordinator=IssueDeliveryCoordinator(store=store),
    )
    app = build_app(role="api", run_id="integration-outage", api_deps=api_deps)

    with TestClient(app) as client:
        response = client.post("/admin/newsletters", json=ISSUE, headers=ACTOR)

    assert response.status_code == 503
    assert store.tasks == {}


@pytest.mark.integration
def test_summary_for_unknown_issue_is_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        response = client.get("/admin/issues/iss_missing/delivery-summary")

    assert response.status_code == 404


@pytest.mark.integration
def test_deliveries_filter_by_status_and_validate_paging(monkeypatch: pytest.MonkeyPatch) -> None:
    container = _api_container(monkeypatch)

    with _client(container) as client:
        client.post("/admin/newsletters", json=ISSUE, headers=ACTOR)
        done = client.get("/admin/deliveries", params={"status": "done"})
        paged = client.get("/admin/deliveries", params={"limit": 1, "offset": 1})
        bad_status = client.get("/admin/deliveries", params={"status": "sent"})
        bad_limit = client.get("/admin/deliveries", params={"limit": 0})

    assert done.status_code == 200
    assert done.json()["items"] == []
    assert paged.status_code == 200
    assert len(paged.json()["items"]) == 1
    assert bad_status.status_code == 422
    assert bad_limit.status_code == 422
