"""
Delivery Scheduler

Owns the EventLog state machine:

    pending -> delivered | failed | cancelled

Callers must hold the subscription lock around every method that touches
a SubscriptionState.
"""
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from webhook_engine.models.event import DomainEvent
from webhook_engine.models.event_log import DeliveryAttempt, EventLog, EventStatus
from webhook_engine.services.filtering import (
    ELIGIBLE,
    Eligibility,
    check_eligibility,
    encode_body,
    transform_payload,
)
from webhook_engine.services.health import HealthMonitor
from webhook_engine.services.rate_limiter import RATE_LIMIT_EXCEEDED, RateLimiter, rate_limiter
from webhook_engine.services.registry import SubscriptionState


class AcceptResult(NamedTuple):
    """Outcome of offering an event to one webhook."""
    eligibility: Eligibility
    event_log: Optional[EventLog] = None
    evicted: tuple[EventLog, ...] = ()
    retry_after: int = 0

    @property
    def accepted(self) -> bool:
        return self.event_log is not None


class Transition(NamedTuple):
    """State change produced by one delivery attempt."""
    status: EventStatus
    auto_disabled: bool = False
    retry_delay: Optional[timedelta] = None
    finished: bool = False


class DeliveryScheduler:
    """Creates event logs and applies attempt outcomes to them."""

    def __init__(
        self,
        health_monitor: Optional[HealthMonitor] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.health_monitor = health_monitor or HealthMonitor()
        self.limiter = limiter or rate_limiter

    def accept(
        self,
        state: SubscriptionState,
        event: DomainEvent,
        now: datetime,
        *,
        apply_filters: bool = True,
    ) -> AcceptResult:
        """
        Filter, rate limit and transform an event.

        Rejections are ordinary results: nothing is logged or retried.
        """
        subscription = state.subscription
        eligibility = check_eligibility(
            subscription,
            event,
            is_active=state.is_active,
            apply_filters=apply_filters,
        )
        if not eligibility.eligible:
            return AcceptResult(eligibility)

        allowed, retry_after = self.limiter.is_allowed(subscription.rate_limit, state.rate_window, now)
        if not allowed:
            return AcceptResult(Eligibility(False, RATE_LIMIT_EXCEEDED), retry_after=retry_after)

        payload = transform_payload(subscription, event, now=now)
        body = encode_body(payload, subscription.content_type)
        log, evicted = self._append_log(state, event.type, payload, body, now)
        return AcceptResult(ELIGIBLE, log, tuple(evicted))

    def resubmit(self, state: SubscriptionState, original: EventLog, now: datetime) -> tuple[EventLog, list[EventLog]]:
        """
        Queue a fresh event log carrying the same body as `original`.

        The original keeps its terminal status; the copy gets a new event id
        and a full attempt budget.
        """
        return self._append_log(state, original.event_type, original.payload, original.body, now)

    def _append_log(
        self,
        state: SubscriptionState,
        event_type: str,
        payload: dict,
        body: bytes,
        now: datetime,
    ) -> tuple[EventLog, list[EventLog]]:
        log = EventLog(
            event_type=event_type,
            subscription_id=state.id,
            triggered_at=now,
            payload=payload,
            body=body,
            payload_size=len(body),
            next_retry_at=now,
        )
        evicted = state.logs.append(log)

        stats = state.statistics
        stats.total_events += 1
        stats.total_payload_bytes += log.payload_size
        stats.last_triggered_at = now
        return log, evicted

    def apply_attempt(
        self,
        state: SubscriptionState,
        log: EventLog,
        attempt: DeliveryAttempt,
        now: datetime,
    ) -> Transition:
        """Record the attempt, update health, then move the log along."""
        log.attempts.append(attempt)
        log.total_attempts += 1
        log.last_attempt_at = attempt.timestamp

        subscription = state.subscription
        monitor = self.health_monitor
        if attempt.succeeded:
            auto_disabled = monitor.record_success(
                state.health,
                state.statistics,
                attempt.response_time_ms,
                threshold=subscription.auto_disable_threshold,
                now=now,
            )
        else:
            auto_disabled = monitor.record_failure(
                state.health,
                state.statistics,
                threshold=subscription.auto_disable_threshold,
                now=now,
            )

        if log.status.is_terminal:
            # cancelled while the request was in flight
            log.next_retry_at = None
            return Transition(log.status, auto_disabled)

        if attempt.succeeded:
            log.status = EventStatus.DELIVERED
            log.delivered_at = now
            log.response_time_ms = attempt.response_time_ms
            log.next_retry_at = None
            return Transition(log.status, auto_disabled, finished=True)

        policy = subscription.retry_policy
        if (
            attempt.retryable
            and log.total_attempts < policy.max_attempts
            and policy.allows_retry(attempt.retry_condition)
        ):
            delay = policy.backoff_delay(log.total_attempts)
            try:
                log.next_retry_at = now + delay
            except OverflowError:
                # retry time past datetime.max
                delay = None
            if delay is not None:
                return Transition(log.status, auto_disabled, delay)

        log.status = EventStatus.FAILED
        log.next_retry_at = None
        return Transition(log.status, auto_disabled, finished=True)

    def cancel(self, log: EventLog, now: datetime) -> bool:
        """Force a pending log to cancelled. Terminal logs are left alone."""
        if log.status.is_terminal:
            return False
        log.status = EventStatus.CANCELLED
        log.cancelled_at = now
        log.next_retry_at = None
        return True

    def fail_if_exhausted(self, state: SubscriptionState, log: EventLog) -> bool:
        """
        Fail a pending log whose attempt budget is already spent.

        Happens when an operator lowers max_attempts while retries are pending.
        """
        if log.status.is_terminal or log.total_attempts < state.subscription.retry_policy.max_attempts:
            return False
        log.status = EventStatus.FAILED
        log.next_retry_at = None
        return True

    def due(self, state: SubscriptionState, now: datetime) -> list[EventLog]:
        """Pending logs whose next attempt time has come."""
        return [log for log in state.logs if log.is_due(now)]
