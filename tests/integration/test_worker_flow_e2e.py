from __future__ import annotations

import time

from fastapi.testclient import TestClient
import pytest

from newsletter.api.http_app import build_app
from newsletter.clients.stub import StubEmailTransport
from newsletter.config import EmailClientSettings
from newsletter.domain.models import SendOutcome
from newsletter.repositories.stub import InMemorySubscriberDirectory
from newsletter.roles import validate_role
from newsletter.services.bootstrap import build_runtime_container
from newsletter.workers.runner import WorkerRuntimeSettings

FAST = WorkerRuntimeSettings(
    pool_size=3,
    poll_interval_ms=1,
    idle_backoff_ms=1,
    max_idle_backoff_ms=5,
    error_backoff_ms=1,
    max_attempts=3,
    base_backoff_ms=1,
    max_backoff_ms=5,
)


def _wait_for_summary(client: TestClient, issue_id: str, *, settled: int, timeout: float = 5.0) -> dict[str, int]:
    deadline = time.monotonic() + timeout
    summary: dict[str, int] = {}
    while time.monotonic() < deadline:
        summary = client.get(f"/admin/issues/{issue_id}/delivery-summary").json()
        if summary["done"] + summary["quarantined"] == settled:
            return summary
        time.sleep(0.01)
    raise AssertionError(f"deliveries did not settle: {summary}")


@pytest.mark.integration
def test_worker_pool_delivers_published_issue(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    container = build_runtime_container(
        validate_role("worker-deliver"),
        email_settings=EmailClientSettings(),
        worker_settings=FAST,
    )
    directory = container.directory
    transport = container.transport
    assert isinstance(directory, InMemorySubscriberDirectory)
    assert isinstance(transport, StubEmailTransport)
    for index in range(6):
        directory.add(email=f"reader{index}@x.com", name=f"Reader {index}")
    transport.scripted["reader0@x.com"] = [
        SendOutcome.transient(error_code="provider_server_error", detail="503"),
        SendOutcome.success(status_code=200),
    ]
    transport.scripted["reader1@x.com"] = [
        SendOutcome.permanent(error_code="provider_rejected", detail="400", status_code=400)
    ]
    transport.scripted["reader2@x.com"] = [
        SendOutcome.transient(error_code="transport_timeout", detail="timed out")
    ]

    app = build_app(
        role="worker-deliver",
        run_id="integration-worker",
        workers=container.workers,
        worker_runtime_settings=FAST,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )

    with TestClient(app) as client:
        published = client.post(
            "/admin/newsletters",
            json={
                "title": "Issue #1",
                "html_content": "<p>Hello</p>",
                "text_content": "Hello",
                "idempotency_key": "k1",
            },
            headers={"X-Actor-Id": "admin-1"},
        )
        assert published.status_code == 202
        issue_id = published.json()["issue_id"]

        summary = _wait_for_summary(client, issue_id, settled=6)
        ready = client.get("/ready").json()
        quarantined = client.get(
            "/admin/deliveries",
            params={"issue_id": issue_id, "status": "quarantined"},
        ).json()["items"]

    assert summary["done"] == 4
    assert summary["quarantined"] == 2
    by_recipient = {item["recipient"]: item for item in quarantined}
    assert by_recipient["reader1@x.com"]["attempt_count"] == 1
    assert by_recipient["reader1@x.com"]["last_error_code"] == "provider_rejected"
    assert by_recipient["reader2@x.com"]["attempt_count"] == 3
    assert by_recipient["reader2@x.com"]["last_error_code"] == "transport_timeout"
    assert len(transport.sent_to("reader0@x.com")) == 2
    assert len(transport.sent_to("reader2@x.com")) == 3
    assert ready["worker_loop_enabled"] is True
    assert ready["worker_loop_ready"] is True
    assert ready["worker_metrics"]["workers"] == 3
    assert ready["worker_metrics"]["claims_total"] >= 6
