"""
Webhook Service

The delivery engine. Fans domain events out to the workspace's webhooks,
runs a bounded pool of delivery workers, and re-queues due retries from a
periodic sweep instead of sleeping inside a worker.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

import structlog

from webhook_engine.config import settings
from webhook_engine.exceptions import EventLogNotFoundError
from webhook_engine.logging_config import get_logger
from webhook_engine.models.event import DomainEvent, utcnow
from webhook_engine.models.event_log import DeliveryAttempt, EventLog, EventStatus
from webhook_engine.models.health import DeliveryStatistics, HealthState, HealthStatus
from webhook_engine.models.subscription import Subscription
from webhook_engine.routes.metrics import (
    track_attempt,
    track_auto_disabled,
    track_event_accepted,
    track_event_log_finished,
    track_event_rejected,
    track_pending_evicted,
    track_retry_scheduled,
    update_queue_depth,
)
from webhook_engine.sentry_config import capture_exception, capture_message
from webhook_engine.services.dispatcher import Dispatcher
from webhook_engine.services.filtering import ELIGIBLE
from webhook_engine.services.history import DeliveryHistoryWriter
from webhook_engine.services.log_store import LogStatistics, compute_statistics
from webhook_engine.services.registry import SubscriptionRegistry, SubscriptionState
from webhook_engine.services.scheduler import AcceptResult, DeliveryScheduler, Transition

logger = structlog.get_logger()

TEST_EVENT_TYPE = "webhook.test"


class DeliveryJob(NamedTuple):
    subscription_id: str
    event_id: str


class DeliveryDecision(NamedTuple):
    """What happened when an event was offered to one webhook."""
    subscription_id: str
    accepted: bool
    event_id: Optional[str] = None
    reason: Optional[str] = None


class WebhookEngine:
    """
    Event intake, delivery workers, retry sweep and operator controls.

    Each webhook's state is only mutated under its lock; HTTP calls run
    outside the lock so one slow endpoint never blocks another webhook.
    """

    def __init__(
        self,
        *,
        dispatcher: Optional[Dispatcher] = None,
        scheduler: Optional[DeliveryScheduler] = None,
        registry: Optional[SubscriptionRegistry] = None,
        history: Optional[DeliveryHistoryWriter] = None,
        concurrency: int = settings.WEBHOOK_WORKER_CONCURRENCY,
        sweep_interval: float = settings.WEBHOOK_SWEEP_INTERVAL_SECONDS,
        shutdown_grace: float = settings.WEBHOOK_SHUTDOWN_GRACE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.dispatcher = dispatcher or Dispatcher()
        self.scheduler = scheduler or DeliveryScheduler()
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.history = history
        self.concurrency = concurrency
        self.sweep_interval = sweep_interval
        self.shutdown_grace = shutdown_grace
        self._clock = clock

        self._queue: asyncio.Queue = asyncio.Queue()
        self._scheduled: set[DeliveryJob] = set()
        self._workers: list[asyncio.Task] = []
        self._sweeper: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start delivery workers and the retry sweeper."""
        if self._running:
            return
        self._queue = asyncio.Queue()
        self._scheduled.clear()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"webhook-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="webhook-retry-sweeper")
        if self.history is not None:
            await self.history.start()

        # logs accepted while stopped are already due
        queued = await self.sweep_due()
        logger.info(
            "webhook_engine_started",
            workers=self.concurrency,
            subscriptions=len(self.registry),
            queued=queued,
        )

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop intake, let in-flight deliveries finish within `grace` seconds,
        then abort the rest. Queued jobs are dropped; their logs stay pending.
        """
        if not self._running:
            return
        grace = self.shutdown_grace if grace is None else grace
        self._running = False

        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        dropped = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._scheduled.discard(job)
            self._queue.task_done()
            dropped += 1
        for _ in self._workers:
            self._queue.put_nowait(None)

        aborted = 0
        if self._workers:
            _, still_running = await asyncio.wait(self._workers, timeout=grace)
            for task in still_running:
                task.cancel()
            aborted = len(still_running)
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self.dispatcher.aclose()
        if self.history is not None:
            for state in self.registry:
                self.history.record_subscription(state)
            await self.history.stop()

        update_queue_depth(0)
        logger.info("webhook_engine_stopped", dropped_jobs=dropped, aborted_deliveries=aborted)

    async def join(self) -> None:
        """Wait until every queued delivery job has been processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    async def publish(self, event: DomainEvent) -> list[DeliveryDecision]:
        """
        Offer an event to every webhook of its workspace.

        Fire-and-forget: rejections and delivery failures are reported in
        the returned decisions and in webhook state, never raised.
        """
        decisions = []
        for state in self.registry.for_workspace(event.workspace_id):
            decisions.append(await self._offer(state, event))
        return decisions

    async def _offer(self, state: SubscriptionState, event: DomainEvent, *, apply_filters: bool = True) -> DeliveryDecision:
        async with state.lock:
            result = self.scheduler.accept(state, event, self._clock(), apply_filters=apply_filters)
        return self._after_accept(state, event.type, result)

    def _after_accept(self, state: SubscriptionState, event_type: str, result: AcceptResult) -> DeliveryDecision:
        if not result.accepted:
            reason = result.eligibility.reason
            track_event_rejected(reason)
            logger.debug(
                "webhook_event_rejected",
                subscription_id=state.id,
                event_type=event_type,
                reason=reason,
            )
            return DeliveryDecision(state.id, False, reason=reason)

        log = result.event_log
        track_event_accepted(event_type)
        self._report_evicted(state, result.evicted)
        self._enqueue(DeliveryJob(state.id, log.event_id))
        if self.history is not None:
            self.history.record_subscription(state)
        logger.info(
            "webhook_event_accepted",
            subscription_id=state.id,
            event_id=log.event_id,
            event_type=event_type,
            payload_size=log.payload_size,
        )
        return DeliveryDecision(state.id, True, event_id=log.event_id)

    def _report_evicted(self, state: SubscriptionState, evicted) -> None:
        lost = [log for log in evicted if log.status is EventStatus.PENDING]
        if not lost:
            return
        track_pending_evicted(len(lost))
        for log in lost:
            logger.warning(
                "webhook_pending_log_evicted",
                subscription_id=state.id,
                event_id=log.event_id,
                attempts=log.total_attempts,
            )

    def _enqueue(self, job: DeliveryJob) -> bool:
        if not self._running or job in self._scheduled:
            return False
        self._scheduled.add(job)
        self._queue.put_nowait(job)
        update_queue_depth(self._queue.qsize())
        return True

    # ------------------------------------------------------------------
    # Retry sweep
    # ------------------------------------------------------------------

    async def sweep_due(self, now: Optional[datetime] = None) -> int:
        """Queue every pending log whose retry time has passed. Returns the number queued."""
        now = now or self._clock()
        queued = 0
        for state in self.registry:
            if not state.is_active:
                continue
            async with state.lock:
                due = self.scheduler.due(state, now)
            for log in due:
                if self._enqueue(DeliveryJob(state.id, log.event_id)):
                    queued += 1
        return queued

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_due()
            except Exception as exc:
                logger.exception("webhook_sweep_failed", error=str(exc))
                capture_exception(exc)

    # ------------------------------------------------------------------
    # Delivery workers
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._process(job)
            except Exception as exc:
                logger.exception(
                    "webhook_worker_error",
                    subscription_id=job.subscription_id,
                    event_id=job.event_id,
                    error=str(exc),
                )
                capture_exception(exc, subscription_id=job.subscription_id)
            finally:
                self._queue.task_done()
                update_queue_depth(self._queue.qsize())

    async def _process(self, job: DeliveryJob) -> None:
        """Run one attempt for one event log."""
        state = self.registry.find(job.subscription_id)
        if state is None:
            self._scheduled.discard(job)
            return

        try:
            async with state.lock:
                log = state.logs.get(job.event_id)
                if log is None or log.status.is_terminal:
                    return
                if not state.is_active:
                    # stays pending; the sweep picks it up again once re-enabled
                    return
                if self.scheduler.fail_if_exhausted(state, log):
                    self._finish(state, log)
                    return
                subscription = state.subscription
                attempt_number = log.total_attempts + 1
                log.next_retry_at = None

            try:
                attempt = await self.dispatcher.dispatch(subscription, log, attempt_number)
            except asyncio.CancelledError:
                if log.status is EventStatus.PENDING:
                    log.next_retry_at = self._clock()
                raise
            except Exception:
                if log.status is EventStatus.PENDING:
                    log.next_retry_at = self._clock() + subscription.retry_policy.backoff_delay(attempt_number)
                raise

            async with state.lock:
                transition = self.scheduler.apply_attempt(state, log, attempt, self._clock())
        finally:
            self._scheduled.discard(job)

        self._after_attempt(state, log, attempt, transition)

    def _after_attempt(
        self,
        state: SubscriptionState,
        log: EventLog,
        attempt: DeliveryAttempt,
        transition: Transition,
    ) -> None:
        track_attempt(attempt.status.value, attempt.response_time_ms)
        log_ctx = get_logger(subscription_id=state.id, event_id=log.event_id, attempt=attempt.attempt_number)

        if transition.retry_delay is not None:
            track_retry_scheduled()
            log_ctx.info(
                "webhook_retry_scheduled",
                delay_ms=transition.retry_delay / timedelta(milliseconds=1),
                next_retry_at=log.next_retry_at.isoformat(),
            )
        if transition.finished:
            self._finish(state, log)
        if transition.auto_disabled:
            track_auto_disabled()
            log_ctx.warning(
                "webhook_auto_disabled",
                consecutive_failures=state.health.consecutive_failures,
                threshold=state.subscription.auto_disable_threshold,
            )
            capture_message(f"Webhook {state.id} auto-disabled after consecutive failures", level="warning")
        if self.history is not None:
            self.history.record_subscription(state)

    def _finish(self, state: SubscriptionState, log: EventLog) -> None:
        track_event_log_finished(log.status.value)
        if self.history is not None:
            self.history.record_event_log(log)
        logger.info(
            "webhook_event_log_finished",
            subscription_id=state.id,
            event_id=log.event_id,
            status=log.status.value,
            attempts=log.total_attempts,
        )

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> SubscriptionState:
        return self.registry.get(subscription_id)

    def subscriptions(self, workspace_id: Optional[str] = None) -> list[SubscriptionState]:
        if workspace_id is None:
            return list(self.registry)
        return self.registry.for_workspace(workspace_id)

    def restore(
        self,
        subscription: Subscription,
        health: HealthStatus,
        statistics: DeliveryStatistics,
    ) -> SubscriptionState:
        """Re-register a stored webhook with its saved health and statistics."""
        return self.registry.create(subscription, health=health, statistics=statistics)

    async def register(self, subscription: Subscription, *, active: bool = True) -> SubscriptionState:
        """
        Create a webhook, or swap in a new config for an existing one.

        An update keeps health, statistics and logs, and re-applies the
        auto-disable threshold from the new config.
        """
        state = self.registry.find(subscription.id)
        if state is None:
            state = self.registry.create(subscription, active=active)
            logger.info("webhook_registered", subscription_id=state.id, workspace_id=subscription.workspace_id)
        else:
            async with state.lock:
                state.subscription = subscription
                auto_disabled = self.scheduler.health_monitor.evaluate(
                    state.health,
                    state.statistics,
                    threshold=subscription.auto_disable_threshold,
                    now=self._clock(),
                )
            if auto_disabled:
                track_auto_disabled()
            logger.info("webhook_updated", subscription_id=state.id)
        if self.history is not None:
            self.history.record_subscription(state)
        return state

    async def unregister(self, subscription_id: str) -> SubscriptionState:
        """Remove a webhook and cancel its pending deliveries."""
        state = self.registry.remove(subscription_id)
        async with state.lock:
            cancelled = self._cancel_pending(state)
        if self.history is not None:
            self.history.forget_subscription(subscription_id)
        logger.info("webhook_unregistered", subscription_id=subscription_id, cancelled=cancelled)
        return state

    async def enable(self, subscription_id: str) -> SubscriptionState:
        """
        Re-activate a webhook and clear its failure streak.

        Failed logs are not replayed; pending retries still within budget resume.
        """
        state = self.registry.get(subscription_id)
        async with state.lock:
            self.scheduler.health_monitor.enable(state.health, now=self._clock())
        if self.history is not None:
            self.history.record_subscription(state)
        logger.info("webhook_enabled", subscription_id=subscription_id)
        return state

    async def disable(
        self,
        subscription_id: str,
        reason: str = "Disabled by operator",
        *,
        cancel_pending: bool = False,
    ) -> SubscriptionState:
        state = self.registry.get(subscription_id)
        async with state.lock:
            self.scheduler.health_monitor.disable(state.health, reason, now=self._clock())
            cancelled = self._cancel_pending(state) if cancel_pending else 0
        if self.history is not None:
            self.history.record_subscription(state)
        logger.info("webhook_disabled", subscription_id=subscription_id, reason=reason, cancelled=cancelled)
        return state

    def _cancel_pending(self, state: SubscriptionState) -> int:
        now = self._clock()
        cancelled = 0
        for log in state.logs.pending():
            if self.scheduler.cancel(log, now):
                self._finish(state, log)
                cancelled += 1
        return cancelled

    async def cancel_event(self, subscription_id: str, event_id: str) -> EventLog:
        """
        Cancel a pending delivery. A request already in flight still records
        its attempt, but the log stays cancelled.
        """
        state = self.registry.get(subscription_id)
        async with state.lock:
            log = state.logs.get(event_id)
            if log is None:
                raise EventLogNotFoundError(subscription_id, event_id)
            if self.scheduler.cancel(log, self._clock()):
                self._finish(state, log)
        return log

    async def resubmit_event(self, subscription_id: str, event_id: str) -> DeliveryDecision:
        """Deliver a finished event again as a new event log with the same body."""
        state = self.registry.get(subscription_id)
        async with state.lock:
            original = state.logs.get(event_id)
            if original is None:
                raise EventLogNotFoundError(subscription_id, event_id)
            if not original.status.is_terminal:
                return DeliveryDecision(state.id, False, event_id=event_id, reason="event is still pending")
            if not state.is_active:
                return DeliveryDecision(state.id, False, event_id=event_id, reason="webhook is not active")
            log, evicted = self.scheduler.resubmit(state, original, self._clock())
        result = AcceptResult(
            eligibility=ELIGIBLE,
            event_log=log,
            evicted=tuple(evicted),
        )
        return self._after_accept(state, log.event_type, result)

    async def trigger_test(self, subscription_id: str) -> DeliveryDecision:
        """Send a `webhook.test` event, whether or not the webhook subscribes to it."""
        state = self.registry.get(subscription_id)
        subscription = state.subscription
        now = self._clock()
        event = DomainEvent(
            type=TEST_EVENT_TYPE,
            workspace_id=subscription.workspace_id,
            data={
                "event": TEST_EVENT_TYPE,
                "timestamp": now.isoformat(),
                "webhook": {"id": subscription.id, "name": subscription.name},
            },
            occurred_at=now,
        )
        return await self._offer(state, event, apply_filters=False)

    async def get_statistics(self, subscription_id: str, days: int = 30) -> LogStatistics:
        state = self.registry.get(subscription_id)
        async with state.lock:
            return compute_statistics(state.logs, days, self._clock())

    async def recent_logs(self, subscription_id: str, limit: int = 20) -> list[EventLog]:
        state = self.registry.get(subscription_id)
        async with state.lock:
            return state.logs.recent(limit)

    async def get_event_log(self, subscription_id: str, event_id: str) -> EventLog:
        state = self.registry.get(subscription_id)
        log = state.logs.get(event_id)
        if log is None:
            raise EventLogNotFoundError(subscription_id, event_id)
        return log

    async def reset_statistics(self, subscription_id: str) -> SubscriptionState:
        """Zero statistics and the failure streak and clear the log ring."""
        state = self.registry.get(subscription_id)
        async with state.lock:
            self.scheduler.health_monitor.reset(state.health, now=self._clock())
            state.statistics = DeliveryStatistics()
            state.logs.clear()
        if self.history is not None:
            self.history.record_subscription(state)
        logger.info("webhook_statistics_reset", subscription_id=subscription_id)
        return state

    async def cleanup_logs(self, older_than_days: int = settings.WEBHOOK_LOG_RETENTION_DAYS) -> int:
        """Drop in-memory logs triggered before the retention cutoff."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = 0
        for state in self.registry:
            async with state.lock:
                removed += state.logs.remove_older_than(cutoff)
        logger.info("webhook_logs_cleaned", removed=removed, older_than_days=older_than_days)
        return removed

    def workspace_statistics(self, workspace_id: str) -> dict:
        states = self.registry.for_workspace(workspace_id)
        return {
            "total": len(states),
            "active": sum(1 for s in states if s.is_active),
            "healthy": sum(1 for s in states if s.health.health is HealthState.HEALTHY),
            "degraded": sum(1 for s in states if s.health.health is HealthState.DEGRADED),
            "failing": sum(1 for s in states if s.health.health is HealthState.FAILING),
            "disabled": sum(1 for s in states if s.health.health is HealthState.DISABLED),
            "total_events": sum(s.statistics.total_events for s in states),
            "total_successful": sum(s.statistics.success_count for s in states),
            "total_failed": sum(s.statistics.failure_count for s in states),
            "average_success_rate": (
                sum(s.statistics.success_rate for s in states) / len(states) if states else 0.0
            ),
        }

    def unhealthy(self) -> list[SubscriptionState]:
        """Active webhooks classified as degraded or failing."""
        return [
            state for state in self.registry
            if state.is_active and state.health.health in (HealthState.DEGRADED, HealthState.FAILING)
        ]
