"""
Tests for the health monitor (statistics folding and circuit breaker).
"""
import pytest

from webhook_engine.models.health import DeliveryStatistics, HealthState, HealthStatus
from webhook_engine.services.health import AUTO_DISABLE_REASON, HealthMonitor, success_rate

from conftest import START


@pytest.fixture
def monitor():
    return HealthMonitor(healthy_success_rate=80.0, degraded_success_rate=50.0)


def test_success_rate_formula():
    assert success_rate(DeliveryStatistics()) == 100.0
    assert success_rate(DeliveryStatistics(success_count=3, failure_count=1)) == 75.0
    assert success_rate(DeliveryStatistics(success_count=0, failure_count=4)) == 0.0


def test_success_rate_tracks_every_outcome(monitor):
    status, stats = HealthStatus(), DeliveryStatistics()
    outcomes = [True, False, True, True, False, True, False]
    for index, ok in enumerate(outcomes, start=1):
        if ok:
            monitor.record_success(status, stats, 10.0, threshold=100, now=START)
        else:
            monitor.record_failure(status, stats, threshold=100, now=START)
        successes = sum(outcomes[:index])
        assert stats.success_rate == pytest.approx(100 * successes / index)


def test_consecutive_failures_reset_only_on_success(monitor):
    status, stats = HealthStatus(), DeliveryStatistics()
    monitor.record_failure(status, stats, threshold=10, now=START)
    monitor.record_failure(status, stats, threshold=10, now=START)
    assert status.consecutive_failures == 2

    monitor.evaluate(status, stats, threshold=10, now=START)
    assert status.consecutive_failures == 2

    monitor.record_success(status, stats, 10.0, threshold=10, now=START)
    assert status.consecutive_failures == 0


def test_average_response_time_is_running_mean(monitor):
    status, stats = HealthStatus(), DeliveryStatistics()
    for latency in (100.0, 200.0, 600.0):
        monitor.record_success(status, stats, latency, threshold=10, now=START)
    monitor.record_failure(status, stats, threshold=10, now=START)
    assert stats.average_response_time_ms == pytest.approx(300.0)


def test_banding(monitor):
    status = HealthStatus()

    monitor.evaluate(status, DeliveryStatistics(success_count=8, failure_count=2), threshold=10, now=START)
    assert status.health is HealthState.HEALTHY

    monitor.evaluate(status, DeliveryStatistics(success_count=6, failure_count=4), threshold=10, now=START)
    assert status.health is HealthState.DEGRADED

    monitor.evaluate(status, DeliveryStatistics(success_count=4, failure_count=6), threshold=10, now=START)
    assert status.health is HealthState.FAILING


def test_auto_disable_at_threshold(monitor):
    status, stats = HealthStatus(), DeliveryStatistics(success_count=1000)

    for _ in range(4):
        assert not monitor.record_failure(status, stats, threshold=5, now=START)
        assert status.is_active

    assert monitor.record_failure(status, stats, threshold=5, now=START)
    assert not status.is_active
    assert status.health is HealthState.DISABLED
    assert status.disabled_reason == AUTO_DISABLE_REASON
    assert status.disabled_at == START

    # further failures keep the invariant but are not a new disable
    assert not monitor.record_failure(status, stats, threshold=5, now=START)
    assert status.health is HealthState.DISABLED


def test_lowered_threshold_disables_on_evaluate(monitor):
    status, stats = HealthStatus(consecutive_failures=3), DeliveryStatistics(failure_count=3)
    assert monitor.evaluate(status, stats, threshold=3, now=START)
    assert not status.is_active


def test_disabled_webhook_stays_disabled_band(monitor):
    status, stats = HealthStatus(), DeliveryStatistics()
    monitor.disable(status, "maintenance", now=START)
    monitor.record_success(status, stats, 5.0, threshold=10, now=START)
    assert status.health is HealthState.DISABLED
    assert status.disabled_reason == "maintenance"


def test_enable_clears_streak(monitor):
    status, stats = HealthStatus(), DeliveryStatistics()
    for _ in range(3):
        monitor.record_failure(status, stats, threshold=3, now=START)
    assert not status.is_active

    monitor.enable(status, now=START)
    assert status.is_active
    assert status.health is HealthState.HEALTHY
    assert status.consecutive_failures == 0
    assert status.disabled_reason is None


def test_invalid_thresholds():
    with pytest.raises(ValueError):
        HealthMonitor(healthy_success_rate=40.0, degraded_success_rate=60.0)
