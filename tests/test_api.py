from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from leadpipe.core.config import get_settings
from leadpipe.main import app
from leadpipe.services.repository import get_repository

HEADERS = {"X-API-Key": "ops-key"}


@pytest.fixture
def client(monkeypatch) -> Iterator[TestClient]:
    monkeypatch.setenv("LP_ADMIN_API_KEY", "ops-key")
    monkeypatch.setenv("LP_OTEL_ENABLED", "false")
    monkeypatch.setenv("LP_EMBEDDED_WORKERS", "false")
    monkeypatch.delenv("LP_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    get_repository.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_settings.cache_clear()
    get_repository.cache_clear()


def _seed_failure(client: TestClient) -> dict:
    repository = client.app.state.pipeline.repository

    async def seed() -> dict:
        subscription = await repository.create_webhook_subscription(
            target_url="https://crm.example.com/hooks",
            event_types=["crm.activity"],
        )
        return await repository.create_webhook_delivery_failure(
            subscription_id=subscription["id"],
            event_type="crm.activity",
            payload={"id": "activity-1"},
            attempts=5,
            final_error="status_500",
        )

    return asyncio.run(seed())


def test_healthz_is_public(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
def test_ops_routes_require_api_key(client: TestClient, headers: dict[str, str]) -> None:
    assert client.get("/webhook-failures", headers=headers).status_code == 401
    assert client.get("/metrics", headers=headers).status_code == 401


def test_list_webhook_failures(client: TestClient) -> None:
    failure = _seed_failure(client)

    response = client.get("/webhook-failures", headers=HEADERS, params={"event_type": "crm.activity"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["limit"] == 50
    assert body["data"][0]["id"] == failure["id"]
    assert body["data"][0]["attempts"] == 5
    assert body["data"][0]["is_resolved"] is False


def test_list_limit_is_bounded(client: TestClient) -> None:
    response = client.get("/webhook-failures", headers=HEADERS, params={"limit": 500})
    assert response.status_code == 422


def test_replay_single_failure(client: TestClient) -> None:
    failure = _seed_failure(client)

    response = client.post(f"/webhook-failures/{failure['id']}/replay", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["replayed"] is True
    assert body["failure_id"] == failure["id"]
    job = client.app.state.pipeline.repository.jobs[body["job_id"]]
    assert job["payload"]["failureId"] == failure["id"]
    assert job["payload"]["replayMode"] == "single"


def test_replay_missing_and_resolved_failures(client: TestClient) -> None:
    assert client.post("/webhook-failures/missing/replay", headers=HEADERS).status_code == 404

    failure = _seed_failure(client)
    client.app.state.pipeline.repository.webhook_delivery_failures[failure["id"]]["is_resolved"] = True
    response = client.post(f"/webhook-failures/{failure['id']}/replay", headers=HEADERS)
    assert response.status_code == 409


def test_replay_all(client: TestClient) -> None:
    _seed_failure(client)
    _seed_failure(client)

    response = client.post("/webhook-failures/replay-all", headers=HEADERS, json={"event_type": "crm.activity"})

    assert response.status_code == 200
    assert response.json()["replayed"] == 2
    assert len(response.json()["job_ids"]) == 2


def test_webhook_test_event(client: TestClient) -> None:
    assert client.post("/webhooks/missing/test", headers=HEADERS).status_code == 404

    repository = client.app.state.pipeline.repository
    subscription = asyncio.run(
        repository.create_webhook_subscription(target_url="https://crm.example.com/hooks", event_types=["test.event"])
    )
    response = client.post(f"/webhooks/{subscription['id']}/test", headers=HEADERS)

    assert response.status_code == 202
    assert response.json()["queue_name"] == "webhook"


def test_metrics_snapshot(client: TestClient) -> None:
    _seed_failure(client)
    client.post("/webhook-failures/replay-all", headers=HEADERS)

    response = client.get("/metrics", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["queues"] == {"webhook": {"queued": 1}}
    assert {"name": "webhook_replay_enqueued_total", "labels": {"mode": "bulk"}, "value": 1} in body["counters"]


def test_deliveries_listing(client: TestClient) -> None:
    repository = client.app.state.pipeline.repository

    async def seed() -> None:
        await repository.create_webhook_delivery_log(
            subscription_id="sub-1", event_type="crm.activity", status="delivered", attempts_made=1, job_id="job-1"
        )
        await repository.create_webhook_delivery_log(
            subscription_id="sub-1",
            event_type="crm.activity",
            status="failed",
            attempts_made=5,
            job_id="job-2",
            last_error="status_500",
        )

    asyncio.run(seed())
    response = client.get("/webhook-deliveries", headers=HEADERS, params={"status": "failed"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["data"][0]["last_error"] == "status_500"


def test_create_and_toggle_webhook_subscription(client: TestClient) -> None:
    response = client.post(
        "/webhook-subscriptions",
        headers=HEADERS,
        json={"target_url": "https://crm.example.com/hooks", "event_types": ["crm.activity"]},
    )

    assert response.status_code == 201
    created = response.json()
    assert created["is_active"] is True
    assert created["event_types"] == ["crm.activity"]
    assert len(created["signing_secret"]) == 64

    response = client.patch(f"/webhook-subscriptions/{created['id']}", headers=HEADERS, json={"is_active": False})

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert "signing_secret" not in response.json()
    stored = client.app.state.pipeline.repository.webhook_subscriptions[created["id"]]
    assert stored["is_active"] is False


def test_webhook_subscription_validation_and_missing(client: TestClient) -> None:
    bad = client.post(
        "/webhook-subscriptions",
        headers=HEADERS,
        json={"target_url": "ftp://crm.example.com", "event_types": ["crm.activity"]},
    )
    assert bad.status_code == 422
    empty = client.post(
        "/webhook-subscriptions",
        headers=HEADERS,
        json={"target_url": "https://crm.example.com/hooks", "event_types": []},
    )
    assert empty.status_code == 422
    missing = client.patch("/webhook-subscriptions/missing", headers=HEADERS, json={"is_active": True})
    assert missing.status_code == 404
    assert client.post("/webhook-subscriptions", json={}).status_code == 401


def test_crm_activities_listing(client: TestClient) -> None:
    repository = client.app.state.pipeline.repository

    async def seed() -> None:
        await repository.create_crm_activity(activity_type="enrichment.completed", metadata={"n": 1}, property_id="p-1")
        await repository.create_crm_activity(activity_type="matchmaking.completed", metadata={"n": 2})
        await repository.create_crm_activity(activity_type="enrichment.completed", metadata={"n": 3}, property_id="p-2")

    asyncio.run(seed())

    response = client.get("/crm-activities", headers=HEADERS, params={"type": "enrichment.completed"})
    assert response.status_code == 200
    body = response.json()
    assert body["limit"] == 50
    assert [row["metadata"]["n"] for row in body["data"]] == [3, 1]

    response = client.get("/crm-activities", headers=HEADERS, params={"property_id": "p-1"})
    assert [row["property_id"] for row in response.json()["data"]] == ["p-1"]
    assert client.get("/crm-activities", headers=HEADERS, params={"limit": 201}).status_code == 422
