"""
Durable webhook history.

WebhookRepository is the SQL access layer for subscription configs, health
snapshots and finished event logs. DeliveryHistoryWriter batches writes on
a background task so the delivery path never waits on the database.
"""
import asyncio
import itertools
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_engine.config import settings
from webhook_engine.models.event_log import EventLog
from webhook_engine.models.health import DeliveryStatistics, HealthState, HealthStatus
from webhook_engine.models.subscription import Subscription
from webhook_engine.models.webhook import WebhookEventLogRecord, WebhookSubscriptionRecord
from webhook_engine.routes.metrics import track_history_dropped
from webhook_engine.sentry_config import capture_exception
from webhook_engine.services.registry import SubscriptionState

logger = structlog.get_logger()


def subscription_record(state: SubscriptionState) -> WebhookSubscriptionRecord:
    subscription = state.subscription
    health = state.health
    stats = state.statistics
    return WebhookSubscriptionRecord(
        id=subscription.id,
        workspace_id=subscription.workspace_id,
        name=subscription.name,
        config=subscription.model_dump(mode="json"),
        is_active=health.is_active,
        health=health.health.value,
        consecutive_failures=health.consecutive_failures,
        disabled_reason=health.disabled_reason,
        disabled_at=health.disabled_at,
        total_events=stats.total_events,
        success_count=stats.success_count,
        failure_count=stats.failure_count,
        success_rate=stats.success_rate,
        average_response_time_ms=stats.average_response_time_ms,
        total_payload_bytes=stats.total_payload_bytes,
    )


def event_log_record(log: EventLog) -> WebhookEventLogRecord:
    return WebhookEventLogRecord(
        event_id=log.event_id,
        subscription_id=log.subscription_id,
        event_type=log.event_type,
        status=log.status.value,
        total_attempts=log.total_attempts,
        payload=log.model_dump(mode="json")["payload"],
        payload_size=log.payload_size,
        attempts=[attempt.model_dump(mode="json") for attempt in log.attempts],
        triggered_at=log.triggered_at,
        delivered_at=log.delivered_at,
        last_attempt_at=log.last_attempt_at,
    )


def restore_state(record: WebhookSubscriptionRecord) -> tuple[Subscription, HealthStatus, DeliveryStatistics]:
    """Rebuild config, health and statistics from a stored row."""
    subscription = Subscription.from_config(record.config)
    health = HealthStatus(
        is_active=record.is_active,
        health=HealthState(record.health),
        consecutive_failures=record.consecutive_failures,
        disabled_reason=record.disabled_reason,
        disabled_at=record.disabled_at,
    )
    stats = DeliveryStatistics(
        total_events=record.total_events,
        success_count=record.success_count,
        failure_count=record.failure_count,
        success_rate=record.success_rate,
        average_response_time_ms=record.average_response_time_ms,
        total_payload_bytes=record.total_payload_bytes,
    )
    return subscription, health, stats


class WebhookRepository:
    """Database access for webhooks and their delivery history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save_subscription(self, state: SubscriptionState) -> None:
        await self.db.merge(subscription_record(state))
        await self.db.commit()

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.db.execute(
            delete(WebhookSubscriptionRecord).where(WebhookSubscriptionRecord.id == subscription_id)
        )
        await self.db.commit()

    async def list_subscriptions(self, workspace_id: Optional[str] = None) -> list[WebhookSubscriptionRecord]:
        stmt = select(WebhookSubscriptionRecord)
        if workspace_id is not None:
            stmt = stmt.where(WebhookSubscriptionRecord.workspace_id == workspace_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def save_event_logs(self, logs: list[EventLog]) -> None:
        for log in logs:
            await self.db.merge(event_log_record(log))
        await self.db.commit()

    async def get_event_logs(self, subscription_id: str, limit: int = 50) -> list[WebhookEventLogRecord]:
        """Most recent finished event logs first."""
        stmt = (
            select(WebhookEventLogRecord)
            .where(WebhookEventLogRecord.subscription_id == subscription_id)
            .order_by(WebhookEventLogRecord.triggered_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def delete_event_logs_before(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(WebhookEventLogRecord).where(WebhookEventLogRecord.triggered_at < cutoff)
        )
        await self.db.commit()
        return result.rowcount or 0


class DeliveryHistoryWriter:
    """
    Buffers subscription snapshots and finished event logs, flushing them in
    batches on a background task.

    Repeated snapshots of the same subscription collapse into one write.
    While storage is unreachable at most max_buffered_logs event logs are
    kept; the oldest are dropped first.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        flush_interval: float = settings.WEBHOOK_HISTORY_FLUSH_INTERVAL_SECONDS,
        batch_size: int = settings.WEBHOOK_HISTORY_BATCH_SIZE,
        max_buffered_logs: int = settings.WEBHOOK_HISTORY_MAX_BUFFERED_LOGS,
    ):
        self.session_factory = session_factory
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.max_buffered_logs = max_buffered_logs
        self._subscriptions: dict[str, SubscriptionState] = {}
        self._event_logs: dict[str, EventLog] = {}
        self._deleted: set[str] = set()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    @property
    def pending_writes(self) -> int:
        return len(self._subscriptions) + len(self._event_logs) + len(self._deleted)

    def record_subscription(self, state: SubscriptionState) -> None:
        self._deleted.discard(state.id)
        self._subscriptions[state.id] = state
        self._maybe_wake()

    def forget_subscription(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)
        self._deleted.add(subscription_id)
        self._maybe_wake()

    def record_event_log(self, log: EventLog) -> None:
        self._event_logs[log.event_id] = log
        self._trim_event_logs()
        self._maybe_wake()

    def _trim_event_logs(self) -> None:
        overflow = len(self._event_logs) - self.max_buffered_logs
        if overflow <= 0:
            return
        for key in list(itertools.islice(self._event_logs, overflow)):
            del self._event_logs[key]
        track_history_dropped(overflow)
        logger.warning("webhook_history_logs_dropped", dropped=overflow, buffered=len(self._event_logs))

    def _maybe_wake(self) -> None:
        if self.pending_writes >= self.batch_size:
            self._wakeup.set()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="webhook-history-writer")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            await self.flush()

    async def flush(self) -> int:
        """Write everything buffered so far. Failed batches stay buffered."""
        async with self._flush_lock:
            states, self._subscriptions = self._subscriptions, {}
            logs, self._event_logs = self._event_logs, {}
            deleted, self._deleted = self._deleted, set()
            if not states and not logs and not deleted:
                return 0

            try:
                async with self.session_factory() as db:
                    for state in states.values():
                        await db.merge(subscription_record(state))
                    for log in logs.values():
                        await db.merge(event_log_record(log))
                    if deleted:
                        await db.execute(
                            delete(WebhookSubscriptionRecord).where(WebhookSubscriptionRecord.id.in_(sorted(deleted)))
                        )
                    await db.commit()
            except Exception as exc:
                logger.error(
                    "webhook_history_flush_failed",
                    error=str(exc),
                    pending=len(states) + len(logs) + len(deleted),
                )
                capture_exception(exc)
                for key, state in states.items():
                    if key not in self._deleted:
                        self._subscriptions.setdefault(key, state)
                # failed logs are older than anything recorded meanwhile
                self._event_logs = {**logs, **self._event_logs}
                self._trim_event_logs()
                self._deleted.update(deleted - self._subscriptions.keys())
                return 0

            logger.debug(
                "webhook_history_flushed",
                subscriptions=len(states),
                event_logs=len(logs),
                deleted=len(deleted),
            )
            return len(states) + len(logs) + len(deleted)
