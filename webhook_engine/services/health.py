"""
Health Monitor

Folds delivery outcomes into statistics and drives the circuit breaker:
healthy -> degraded -> failing, and disabled once consecutive failures
reach the webhook's auto-disable threshold.
"""
from datetime import datetime

from webhook_engine.config import settings
from webhook_engine.models.health import DeliveryStatistics, HealthState, HealthStatus


AUTO_DISABLE_REASON = "Auto-disabled due to consecutive failures"


class HealthMonitor:
    """Stateless rules applied to a webhook's HealthStatus and DeliveryStatistics."""

    def __init__(
        self,
        healthy_success_rate: float = settings.WEBHOOK_HEALTHY_SUCCESS_RATE,
        degraded_success_rate: float = settings.WEBHOOK_DEGRADED_SUCCESS_RATE,
    ):
        if degraded_success_rate > healthy_success_rate:
            raise ValueError("degraded threshold must not exceed healthy threshold")
        self.healthy_success_rate = healthy_success_rate
        self.degraded_success_rate = degraded_success_rate

    def record_success(
        self,
        status: HealthStatus,
        stats: DeliveryStatistics,
        latency_ms: float,
        *,
        threshold: int,
        now: datetime,
    ) -> bool:
        status.consecutive_failures = 0
        stats.success_count += 1
        stats.last_success_at = now
        # incremental mean
        stats.average_response_time_ms += (latency_ms - stats.average_response_time_ms) / stats.success_count
        return self.evaluate(status, stats, threshold=threshold, now=now)

    def record_failure(
        self,
        status: HealthStatus,
        stats: DeliveryStatistics,
        *,
        threshold: int,
        now: datetime,
    ) -> bool:
        status.consecutive_failures += 1
        stats.failure_count += 1
        stats.last_failure_at = now
        return self.evaluate(status, stats, threshold=threshold, now=now)

    def evaluate(
        self,
        status: HealthStatus,
        stats: DeliveryStatistics,
        *,
        threshold: int,
        now: datetime,
    ) -> bool:
        """
        Recompute success rate and health.

        Returns True when this evaluation auto-disabled the webhook.
        """
        stats.success_rate = success_rate(stats)
        status.last_health_check = now

        if status.consecutive_failures >= threshold:
            newly_disabled = status.is_active
            if newly_disabled:
                self.disable(status, AUTO_DISABLE_REASON, now=now)
            status.health = HealthState.DISABLED
            return newly_disabled

        if not status.is_active:
            status.health = HealthState.DISABLED
        elif stats.success_rate < self.degraded_success_rate:
            status.health = HealthState.FAILING
        elif stats.success_rate < self.healthy_success_rate:
            status.health = HealthState.DEGRADED
        else:
            status.health = HealthState.HEALTHY
        return False

    def disable(self, status: HealthStatus, reason: str, *, now: datetime) -> None:
        status.is_active = False
        status.health = HealthState.DISABLED
        status.disabled_reason = reason
        status.disabled_at = now

    def enable(self, status: HealthStatus, *, now: datetime) -> None:
        # banding resumes with the next delivery outcome
        status.is_active = True
        status.health = HealthState.HEALTHY
        status.consecutive_failures = 0
        status.disabled_reason = None
        status.disabled_at = None
        status.last_health_check = now

    def reset(self, status: HealthStatus, *, now: datetime) -> None:
        status.consecutive_failures = 0
        status.last_health_check = now
        if status.is_active:
            status.health = HealthState.HEALTHY


def success_rate(stats: DeliveryStatistics) -> float:
    attempts = stats.success_count + stats.failure_count
    if attempts == 0:
        return 100.0
    return stats.success_count / attempts * 100
