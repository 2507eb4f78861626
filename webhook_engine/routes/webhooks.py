"""
Webhook API routes.

Operator endpoints for registering webhooks, inspecting delivery logs and
health, and steering the delivery engine.
"""
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from webhook_engine.models.event import DomainEvent
from webhook_engine.models.subscription import Subscription
from webhook_engine.services.history import WebhookRepository
from webhook_engine.services.webhook_service import WebhookEngine


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Engine-owned fields an operator may not set through the config document
_READ_ONLY_FIELDS = ("id", "created_at")


class DisableRequest(BaseModel):
    """Request model for disabling a webhook."""
    reason: str = "Disabled by operator"
    cancel_pending: bool = False


def get_engine(request: Request) -> WebhookEngine:
    return request.app.state.webhook_engine


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=dict)
async def create_webhook(
    payload: dict[str, Any] = Body(...),
    engine: WebhookEngine = Depends(get_engine),
):
    """
    Register a webhook.

    The body is the webhook config document plus an optional `is_active`
    flag. The signing secret is only returned here.
    """
    config = dict(payload)
    active = bool(config.pop("is_active", True))
    for field in _READ_ONLY_FIELDS:
        config.pop(field, None)

    subscription = Subscription.from_config(config)
    state = await engine.register(subscription, active=active)
    return {
        "webhook": state.snapshot(),
        "secret": subscription.secret,
    }


@router.get("/", response_model=dict)
async def list_webhooks(
    workspace_id: str | None = None,
    engine: WebhookEngine = Depends(get_engine),
):
    """List webhooks, optionally for one workspace."""
    states = engine.subscriptions(workspace_id)
    return {
        "webhooks": [state.snapshot() for state in states],
        "total": len(states),
    }


@router.get("/unhealthy", response_model=dict)
async def list_unhealthy_webhooks(engine: WebhookEngine = Depends(get_engine)):
    """Active webhooks currently classified as degraded or failing."""
    states = engine.unhealthy()
    return {
        "webhooks": [state.snapshot() for state in states],
        "total": len(states),
    }


@router.get("/workspaces/{workspace_id}/statistics", response_model=dict)
async def get_workspace_statistics(workspace_id: str, engine: WebhookEngine = Depends(get_engine)):
    return engine.workspace_statistics(workspace_id)


@router.post("/events", response_model=dict)
async def publish_event(event: DomainEvent, engine: WebhookEngine = Depends(get_engine)):
    """
    Offer a domain event to every webhook of its workspace.

    Delivery happens in the background; the response only reports which
    webhooks accepted the event.
    """
    decisions = await engine.publish(event)
    return {
        "decisions": [decision._asdict() for decision in decisions],
        "accepted": sum(1 for decision in decisions if decision.accepted),
    }


@router.get("/{subscription_id}", response_model=dict)
async def get_webhook(subscription_id: str, engine: WebhookEngine = Depends(get_engine)):
    return engine.get(subscription_id).snapshot()


@router.patch("/{subscription_id}", response_model=dict)
async def update_webhook(
    subscription_id: str,
    changes: dict[str, Any] = Body(...),
    engine: WebhookEngine = Depends(get_engine),
):
    """
    Replace parts of a webhook's config.

    Health, statistics and event logs are kept. Use the enable/disable
    endpoints to change activity.
    """
    state = engine.get(subscription_id)
    changes = {key: value for key, value in changes.items() if key not in _READ_ONLY_FIELDS + ("is_active",)}
    subscription = state.subscription.updated(changes)
    state = await engine.register(subscription)
    return state.snapshot()


@router.delete("/{subscription_id}", response_model=dict)
async def delete_webhook(subscription_id: str, engine: WebhookEngine = Depends(get_engine)):
    """Remove a webhook. Pending deliveries are cancelled."""
    await engine.unregister(subscription_id)
    return {"message": "Webhook removed successfully", "id": subscription_id}


@router.post("/{subscription_id}/enable", response_model=dict)
async def enable_webhook(subscription_id: str, engine: WebhookEngine = Depends(get_engine)):
    state = await engine.enable(subscription_id)
    return state.snapshot()


@router.post("/{subscription_id}/disable", response_model=dict)
async def disable_webhook(
    subscription_id: str,
    body: DisableRequest | None = None,
    engine: WebhookEngine = Depends(get_engine),
):
    body = body or DisableRequest()
    state = await engine.disable(
        subscription_id,
        body.reason,
        cancel_pending=body.cancel_pending,
    )
    return state.snapshot()


@router.post("/{subscription_id}/test", response_model=dict)
async def test_webhook(subscription_id: str, engine: WebhookEngine = Depends(get_engine)):
    """Queue a `webhook.test` delivery regardless of the subscribed events."""
    decision = await engine.trigger_test(subscription_id)
    return decision._asdict()


@router.get("/{subscription_id}/statistics", response_model=dict)
async def get_webhook_statistics(
    subscription_id: str,
    days: int = Query(default=30, ge=1, le=365),
    engine: WebhookEngine = Depends(get_engine),
):
    stats = await engine.get_statistics(subscription_id, days)
    return stats.model_dump(mode="json")


@router.post("/{subscription_id}/statistics/reset", response_model=dict)
async def reset_webhook_statistics(subscription_id: str, engine: WebhookEngine = Depends(get_engine)):
    state = await engine.reset_statistics(subscription_id)
    return state.snapshot()


@router.get("/{subscription_id}/logs", response_model=dict)
async def get_webhook_logs(
    subscription_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    engine: WebhookEngine = Depends(get_engine),
):
    """Most recent in-memory event logs, newest first."""
    logs = await engine.recent_logs(subscription_id, limit)
    return {
        "logs": [log.model_dump(mode="json") for log in logs],
        "total": len(logs),
    }


@router.get("/{subscription_id}/history", response_model=dict)
async def get_webhook_history(
    subscription_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    engine: WebhookEngine = Depends(get_engine),
):
    """Finished event logs from durable storage, newest first."""
    engine.get(subscription_id)
    session_factory = getattr(request.app.state, "session_factory", None)
    if session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery history storage is not configured"
        )

    async with session_factory() as db:
        records = await WebhookRepository(db).get_event_logs(subscription_id, limit)
    return {
        "logs": [
            {
                "event_id": record.event_id,
                "event_type": record.event_type,
                "status": record.status,
                "total_attempts": record.total_attempts,
                "payload_size": record.payload_size,
                "triggered_at": record.triggered_at.isoformat(),
                "delivered_at": record.delivered_at.isoformat() if record.delivered_at else None,
                "attempts": record.attempts,
            }
            for record in records
        ],
        "total": len(records),
    }


@router.get("/{subscription_id}/logs/{event_id}", response_model=dict)
async def get_webhook_log(subscription_id: str, event_id: str, engine: WebhookEngine = Depends(get_engine)):
    log = await engine.get_event_log(subscription_id, event_id)
    return log.model_dump(mode="json")


@router.post("/{subscription_id}/logs/{event_id}/cancel", response_model=dict)
async def cancel_webhook_event(subscription_id: str, event_id: str, engine: WebhookEngine = Depends(get_engine)):
    log = await engine.cancel_event(subscription_id, event_id)
    return log.model_dump(mode="json")


@router.post("/{subscription_id}/logs/{event_id}/retry", response_model=dict)
async def retry_webhook_event(subscription_id: str, event_id: str, engine: WebhookEngine = Depends(get_engine)):
    """
    Deliver a finished event again as a new event log.

    Returns 409 when the event is still pending or the webhook is inactive.
    """
    decision = await engine.resubmit_event(subscription_id, event_id)
    if not decision.accepted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=decision.reason
        )
    return decision._asdict()
