"""
ARQ event intake worker for the webhook engine.

Producers enqueue domain events on Redis; the worker offers each one to the
delivery engine. Run standalone with `arq webhook_engine.worker.WorkerSettings`
or inside the API process (WEBHOOK_REDIS_INTAKE_ENABLED).
"""
import asyncio
from datetime import timedelta

import structlog
from arq import create_pool, cron
from arq.connections import RedisSettings
from arq.worker import Worker, create_worker
from pydantic import ValidationError

from webhook_engine.config import settings
from webhook_engine.models.event import DomainEvent, utcnow
from webhook_engine.services.history import DeliveryHistoryWriter, WebhookRepository, restore_state
from webhook_engine.services.webhook_service import WebhookEngine

logger = structlog.get_logger()

ENGINE_KEY = "webhook_engine"
SESSION_FACTORY_KEY = "session_factory"


async def load_subscriptions(engine: WebhookEngine, session_factory) -> int:
    """Register every stored webhook with its saved health and statistics."""
    async with session_factory() as db:
        records = await WebhookRepository(db).list_subscriptions()
    for record in records:
        subscription, health, statistics = restore_state(record)
        engine.restore(subscription, health, statistics)
    logger.info("webhook_subscriptions_loaded", count=len(records))
    return len(records)


async def deliver_event(ctx: dict, event: dict) -> dict:
    """Offer one domain event to the engine. Malformed events are dropped."""
    engine: WebhookEngine = ctx[ENGINE_KEY]
    job_try = ctx.get("job_try", 1)

    try:
        domain_event = DomainEvent.model_validate(event)
    except ValidationError as e:
        logger.warning("webhook_event_invalid", error=str(e), job_try=job_try)
        return {"status": "invalid", "error": str(e)}

    decisions = await engine.publish(domain_event)
    accepted = sum(1 for decision in decisions if decision.accepted)
    logger.info(
        "webhook_event_consumed",
        event_type=domain_event.type,
        workspace_id=domain_event.workspace_id,
        accepted=accepted,
        offered=len(decisions),
    )
    return {
        "status": "accepted" if accepted else "ignored",
        "decisions": [decision._asdict() for decision in decisions],
    }


async def cleanup_event_logs(ctx: dict) -> dict:
    """Drop event logs older than the retention window, in memory and in storage."""
    engine: WebhookEngine = ctx[ENGINE_KEY]
    removed = await engine.cleanup_logs(settings.WEBHOOK_LOG_RETENTION_DAYS)

    stored = 0
    session_factory = ctx.get(SESSION_FACTORY_KEY)
    if session_factory is not None:
        cutoff = utcnow() - timedelta(days=settings.WEBHOOK_LOG_RETENTION_DAYS)
        async with session_factory() as db:
            stored = await WebhookRepository(db).delete_event_logs_before(cutoff)
    return {"in_memory": removed, "stored": stored}


async def startup(ctx: dict) -> None:
    """
    Build and start an engine unless the hosting process supplied one.
    """
    if ENGINE_KEY in ctx:
        return

    from webhook_engine.database import AsyncSessionLocal
    from webhook_engine.logging_config import configure_logging
    from webhook_engine.sentry_config import configure_sentry

    configure_logging()
    configure_sentry()

    engine = WebhookEngine(history=DeliveryHistoryWriter(AsyncSessionLocal))
    await load_subscriptions(engine, AsyncSessionLocal)
    await engine.start()
    ctx[ENGINE_KEY] = engine
    ctx[SESSION_FACTORY_KEY] = AsyncSessionLocal
    ctx["owns_engine"] = True


async def shutdown(ctx: dict) -> None:
    if ctx.get("owns_engine"):
        await ctx[ENGINE_KEY].shutdown()


async def enqueue_event(event: DomainEvent) -> bool:
    """Enqueue a domain event for webhook delivery using ARQ."""
    try:
        redis = await create_pool(
            RedisSettings.from_dsn(settings.REDIS_URL),
            default_queue_name=settings.WEBHOOK_QUEUE_NAME,
        )
    except Exception as e:
        logger.error("webhook_event_enqueue_failed", event_type=event.type, error=str(e))
        return False

    try:
        await redis.enqueue_job("deliver_event", event.model_dump(mode="json"))
    except Exception as e:
        logger.error("webhook_event_enqueue_failed", event_type=event.type, error=str(e))
        return False
    finally:
        await redis.aclose()

    logger.info("webhook_event_enqueued", event_type=event.type, workspace_id=event.workspace_id)
    return True


def build_worker(engine: WebhookEngine, session_factory=None) -> Worker:
    """An arq Worker that feeds an already running engine."""
    return create_worker(
        WorkerSettings,
        ctx={ENGINE_KEY: engine, SESSION_FACTORY_KEY: session_factory},
        handle_signals=False,
    )


async def run_worker(worker: Worker) -> None:
    try:
        await worker.async_run()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.exception("webhook_intake_worker_crashed", error=str(e))


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq webhook_engine.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = settings.WEBHOOK_QUEUE_NAME
    functions = [deliver_event]
    cron_jobs = [cron(cleanup_event_logs, hour={3}, minute={0}, run_at_startup=False)]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 60
    # publishing is not idempotent, so a failed intake is not replayed
    max_tries = 1
