"""
WebhookEngine - outbound webhook delivery service

FastAPI application entry point. The process hosts the delivery engine and
exposes the operator API on top of it.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

# Import observability modules
from webhook_engine.config import settings
from webhook_engine.exceptions import (
    ConfigurationError,
    EventLogNotFoundError,
    SubscriptionNotFoundError,
)
from webhook_engine.logging_config import configure_logging
from webhook_engine.sentry_config import configure_sentry
from webhook_engine.middleware.logging import LoggingMiddleware
from webhook_engine.routes.metrics import router as metrics_router

# Import route modules
from webhook_engine.routes.webhooks import router as webhooks_router
from webhook_engine.services.history import DeliveryHistoryWriter
from webhook_engine.services.webhook_service import WebhookEngine
from webhook_engine.worker import build_worker, load_subscriptions, run_worker

logger = structlog.get_logger()


def _default_session_factory() -> Optional[async_sessionmaker]:
    if not settings.PERSISTENCE_ENABLED:
        return None
    from webhook_engine.database import AsyncSessionLocal
    return AsyncSessionLocal


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load stored webhooks, then run the engine for the lifetime of the app."""
    engine: WebhookEngine = app.state.webhook_engine
    session_factory = app.state.session_factory

    if session_factory is not None:
        if engine.history is None:
            engine.history = DeliveryHistoryWriter(session_factory)
        await load_subscriptions(engine, session_factory)

    await engine.start()

    intake_task = None
    worker = None
    if app.state.redis_intake:
        worker = build_worker(engine, session_factory)
        intake_task = asyncio.create_task(run_worker(worker), name="webhook-redis-intake")
        logger.info("webhook_redis_intake_started", queue=settings.WEBHOOK_QUEUE_NAME)

    try:
        yield
    finally:
        if intake_task is not None:
            intake_task.cancel()
            await asyncio.gather(intake_task, return_exceptions=True)
            await worker.close()
        await engine.shutdown()


def create_app(
    engine: Optional[WebhookEngine] = None,
    session_factory: Optional[async_sessionmaker] = None,
    *,
    persistence: bool = True,
    redis_intake: bool = settings.WEBHOOK_REDIS_INTAKE_ENABLED,
) -> FastAPI:
    """
    Build the API around a delivery engine.

    With persistence on and no session factory given, the configured
    database is used.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Outbound webhook delivery engine with retries, health tracking and delivery logs",
        lifespan=lifespan,
    )

    app.state.webhook_engine = engine or WebhookEngine()
    if persistence and session_factory is None:
        session_factory = _default_session_factory()
    app.state.session_factory = session_factory if persistence else None
    app.state.redis_intake = redis_intake

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "errors": exc.errors},
        )

    @app.exception_handler(SubscriptionNotFoundError)
    @app.exception_handler(EventLogNotFoundError)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc)},
        )

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    # Include webhook routes
    app.include_router(webhooks_router)

    @app.get("/")
    async def root():
        """Service info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Delivery engine health check."""
        webhook_engine: WebhookEngine = app.state.webhook_engine
        return {
            "status": "healthy" if webhook_engine.running else "stopped",
            "webhooks": len(webhook_engine.registry),
            "queued_deliveries": webhook_engine.queue_size,
            "unhealthy_webhooks": len(webhook_engine.unhealthy()),
        }

    return app


# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

app = create_app()
