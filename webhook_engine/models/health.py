"""
Engine-owned mutable state of a subscription: health, statistics, rate window.
"""
import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class HealthState(str, enum.Enum):
    """Circuit breaker classification of a webhook."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"
    DISABLED = "disabled"


class HealthStatus(BaseModel):
    is_active: bool = True
    health: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    disabled_reason: Optional[str] = None
    disabled_at: Optional[datetime] = None
    last_health_check: Optional[datetime] = None


class DeliveryStatistics(BaseModel):
    total_events: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 100.0
    average_response_time_ms: float = 0.0
    total_payload_bytes: int = 0
    last_triggered_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


class RateLimitWindow(BaseModel):
    current_count: int = 0
    window_reset_at: Optional[datetime] = None
