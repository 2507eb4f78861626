"""
Tests for the operator API.
"""
import httpx
import pytest
import pytest_asyncio

from webhook_engine.main import create_app
from webhook_engine.middleware import logging as request_logging
from webhook_engine.models.health import HealthState
from webhook_engine.services.history import WebhookRepository
from webhook_engine.services.scheduler import DeliveryScheduler
from webhook_engine.services.webhook_service import WebhookEngine

from conftest import START

WEBHOOK = {
    "workspace_id": "ws-1",
    "name": "Docs hook",
    "url": "https://hooks.example.com/receive",
    "events": ["document.created"],
}

EVENT = {
    "type": "document.created",
    "workspace_id": "ws-1",
    "entity_refs": {"document_id": "doc-1"},
    "data": {"document": {"id": "doc-1"}},
}


@pytest_asyncio.fixture
async def engine(clock, dispatcher_factory):
    instance = WebhookEngine(dispatcher=dispatcher_factory(), sweep_interval=3600, clock=clock)
    yield instance
    await instance.shutdown(grace=0)


@pytest_asyncio.fixture
async def client(engine):
    app = create_app(engine=engine, persistence=False, redis_intake=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_webhook(client, **overrides) -> str:
    response = await client.post("/api/webhooks/", json={**WEBHOOK, **overrides})
    assert response.status_code == 201
    return response.json()["webhook"]["subscription"]["id"]


@pytest.mark.asyncio
async def test_create_returns_secret_once(client):
    response = await client.post("/api/webhooks/", json={**WEBHOOK, "secret": "s3cret"})
    assert response.status_code == 201
    data = response.json()
    assert data["secret"] == "s3cret"
    assert "secret" not in data["webhook"]["subscription"]
    assert data["webhook"]["status"]["health"] == "healthy"

    webhook_id = data["webhook"]["subscription"]["id"]
    fetched = await client.get(f"/api/webhooks/{webhook_id}")
    assert fetched.status_code == 200
    assert "secret" not in fetched.json()["subscription"]


@pytest.mark.asyncio
async def test_create_ignores_supplied_id(client):
    response = await client.post("/api/webhooks/", json={**WEBHOOK, "id": "chosen"})
    assert response.json()["webhook"]["subscription"]["id"] != "chosen"


@pytest.mark.asyncio
async def test_create_inactive(client):
    response = await client.post("/api/webhooks/", json={**WEBHOOK, "is_active": False})
    assert response.json()["webhook"]["status"]["is_active"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"url": "ftp://hooks.example.com"},
    {"events": []},
    {"timeout_seconds": 120},
    {"retry_policy": {"max_attempts": 0}},
])
async def test_invalid_config_rejected(client, overrides):
    response = await client.post("/api/webhooks/", json={**WEBHOOK, **overrides})
    assert response.status_code == 422
    body = response.json()
    assert body["detail"].startswith("Invalid webhook configuration")
    assert body["errors"]


@pytest.mark.asyncio
async def test_unknown_webhook_is_404(client):
    response = await client.get("/api/webhooks/missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "Webhook not found: missing"}

    response = await client.post("/api/webhooks/missing/test")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_by_workspace(client):
    await create_webhook(client)
    await create_webhook(client, workspace_id="ws-2")

    everything = (await client.get("/api/webhooks/")).json()
    assert everything["total"] == 2

    scoped = (await client.get("/api/webhooks/", params={"workspace_id": "ws-2"})).json()
    assert scoped["total"] == 1
    assert scoped["webhooks"][0]["subscription"]["workspace_id"] == "ws-2"


@pytest.mark.asyncio
async def test_patch_keeps_identity(client):
    webhook_id = await create_webhook(client)
    before = (await client.get(f"/api/webhooks/{webhook_id}")).json()

    response = await client.patch(
        f"/api/webhooks/{webhook_id}",
        json={"name": "Renamed", "id": "other", "is_active": False},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["subscription"]["id"] == webhook_id
    assert data["subscription"]["name"] == "Renamed"
    assert data["subscription"]["created_at"] == before["subscription"]["created_at"]
    assert data["status"]["is_active"] is True

    invalid = await client.patch(f"/api/webhooks/{webhook_id}", json={"url": "not a url"})
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_disable_and_enable(client):
    webhook_id = await create_webhook(client)

    disabled = await client.post(f"/api/webhooks/{webhook_id}/disable", json={"reason": "maintenance"})
    assert disabled.status_code == 200
    status = disabled.json()["status"]
    assert status["is_active"] is False
    assert status["health"] == "disabled"
    assert status["disabled_reason"] == "maintenance"

    # no body uses the default reason
    await client.post(f"/api/webhooks/{webhook_id}/enable")
    disabled = await client.post(f"/api/webhooks/{webhook_id}/disable")
    assert disabled.json()["status"]["disabled_reason"] == "Disabled by operator"

    enabled = await client.post(f"/api/webhooks/{webhook_id}/enable")
    assert enabled.json()["status"]["is_active"] is True
    assert enabled.json()["status"]["health"] == "healthy"


@pytest.mark.asyncio
async def test_publish_and_inspect_logs(client, engine):
    await engine.start()
    webhook_id = await create_webhook(client)
    await create_webhook(client, events=["folder.deleted"])

    response = await client.post("/api/webhooks/events", json=EVENT)
    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] == 1
    assert len(body["decisions"]) == 2
    event_id = next(d["event_id"] for d in body["decisions"] if d["accepted"])
    await engine.join()

    logs = (await client.get(f"/api/webhooks/{webhook_id}/logs")).json()
    assert logs["total"] == 1
    assert logs["logs"][0]["event_id"] == event_id
    assert logs["logs"][0]["status"] == "delivered"
    assert "body" not in logs["logs"][0]

    log = (await client.get(f"/api/webhooks/{webhook_id}/logs/{event_id}")).json()
    assert log["total_attempts"] == 1
    assert log["attempts"][0]["status_code"] == 200

    missing = await client.get(f"/api/webhooks/{webhook_id}/logs/nope")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_invalid_event_is_422(client):
    response = await client.post("/api/webhooks/events", json={"workspace_id": "ws-1"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_trigger_test_delivery(client, engine):
    await engine.start()
    webhook_id = await create_webhook(client)

    response = await client.post(f"/api/webhooks/{webhook_id}/test")
    assert response.status_code == 200
    decision = response.json()
    assert decision["accepted"] is True
    await engine.join()

    log = (await client.get(f"/api/webhooks/{webhook_id}/logs/{decision['event_id']}")).json()
    assert log["event_type"] == "webhook.test"
    assert log["status"] == "delivered"


@pytest.mark.asyncio
async def test_retry_pending_conflicts_and_finished_resubmits(client, engine):
    webhook_id = await create_webhook(client)
    event_id = (await client.post(f"/api/webhooks/{webhook_id}/test")).json()["event_id"]

    # engine not started: the log stays pending
    conflict = await client.post(f"/api/webhooks/{webhook_id}/logs/{event_id}/retry")
    assert conflict.status_code == 409
    assert conflict.json()["detail"] == "event is still pending"

    cancelled = await client.post(f"/api/webhooks/{webhook_id}/logs/{event_id}/cancel")
    assert cancelled.json()["status"] == "cancelled"

    retried = await client.post(f"/api/webhooks/{webhook_id}/logs/{event_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["accepted"] is True
    assert retried.json()["event_id"] != event_id


@pytest.mark.asyncio
async def test_statistics_and_reset(client, engine):
    await engine.start()
    webhook_id = await create_webhook(client)
    await client.post("/api/webhooks/events", json=EVENT)
    await engine.join()

    stats = (await client.get(f"/api/webhooks/{webhook_id}/statistics", params={"days": 7})).json()
    assert stats["total_events"] == 1
    assert stats["delivered"] == 1

    out_of_range = await client.get(f"/api/webhooks/{webhook_id}/statistics", params={"days": 0})
    assert out_of_range.status_code == 422

    workspace = (await client.get("/api/webhooks/workspaces/ws-1/statistics")).json()
    assert workspace["total"] == 1
    assert workspace["total_successful"] == 1

    reset = (await client.post(f"/api/webhooks/{webhook_id}/statistics/reset")).json()
    assert reset["statistics"]["total_events"] == 0
    assert reset["event_log_count"] == 0


@pytest.mark.asyncio
async def test_unhealthy_listing(client, engine):
    webhook_id = await create_webhook(client)
    engine.get(webhook_id).health.health = HealthState.FAILING

    unhealthy = (await client.get("/api/webhooks/unhealthy")).json()
    assert [w["subscription"]["id"] for w in unhealthy["webhooks"]] == [webhook_id]


@pytest.mark.asyncio
async def test_delete(client):
    webhook_id = await create_webhook(client)
    response = await client.delete(f"/api/webhooks/{webhook_id}")
    assert response.json() == {"message": "Webhook removed successfully", "id": webhook_id}
    assert (await client.get(f"/api/webhooks/{webhook_id}")).status_code == 404


@pytest.mark.asyncio
async def test_history_requires_storage(client):
    webhook_id = await create_webhook(client)
    response = await client.get(f"/api/webhooks/{webhook_id}/history")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_history_reads_stored_logs(engine, session_factory, subscription_factory, event_factory, attempt_factory):
    state = await engine.register(subscription_factory())
    scheduler = DeliveryScheduler()
    log = scheduler.accept(state, event_factory(), START).event_log
    scheduler.apply_attempt(state, log, attempt_factory(1), START)
    async with session_factory() as db:
        await WebhookRepository(db).save_event_logs([log])

    app = create_app(engine=engine, session_factory=session_factory, redis_intake=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get(f"/api/webhooks/{state.id}/history")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["logs"][0]["event_id"] == log.event_id
    assert body["logs"][0]["status"] == "delivered"


@pytest.mark.asyncio
async def test_service_endpoints(client, engine):
    assert (await client.get("/")).json()["status"] == "running"

    stopped = (await client.get("/health")).json()
    assert stopped["status"] == "stopped"

    await engine.start()
    await create_webhook(client)
    health = (await client.get("/health")).json()
    assert health == {
        "status": "healthy",
        "webhooks": 1,
        "queued_deliveries": 0,
        "unhealthy_webhooks": 0,
    }

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "webhook_events_accepted_total" in metrics.text
    assert "http_requests_total" in metrics.text


class RecordingLogger:
    def __init__(self, events, context=None):
        self.events = events
        self.context = context or {}

    def bind(self, **kwargs):
        return RecordingLogger(self.events, {**self.context, **kwargs})

    def info(self, event, **kwargs):
        self.events.append((event, {**self.context, **kwargs}))

    error = info


@pytest.mark.asyncio
async def test_request_logs_carry_ids(client, monkeypatch):
    events = []
    monkeypatch.setattr(request_logging, "logger", RecordingLogger(events))
    webhook_id = await create_webhook(client)

    await client.get(f"/api/webhooks/{webhook_id}/logs")
    await client.get("/api/webhooks/", params={"workspace_id": "ws-1"})
    await client.get("/api/webhooks/workspaces/ws-2/statistics")

    contexts = [context for event, context in events if event == "request_completed"]
    assert contexts[1]["subscription_id"] == webhook_id
    assert contexts[1]["status_code"] == 200
    assert "workspace_id" not in contexts[1]
    assert contexts[2]["workspace_id"] == "ws-1"
    assert "subscription_id" not in contexts[2]
    assert contexts[3]["workspace_id"] == "ws-2"
