"""
Event log and delivery attempt models.

One EventLog tracks the delivery lifecycle of one event to one webhook.
DeliveryAttempts are append-only children of an EventLog.
"""
import enum
import secrets
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from webhook_engine.models.event import utcnow
from webhook_engine.models.subscription import RetryCondition


class EventStatus(str, enum.Enum):
    """EventLog status. Only PENDING is non-terminal."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.PENDING


class AttemptOutcome(str, enum.Enum):
    """Classified result of one HTTP call."""
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class DeliveryAttempt(BaseModel):
    """Result of a single outbound HTTP call. Never mutated once written."""
    model_config = ConfigDict(frozen=True)

    attempt_number: int = Field(ge=1)
    timestamp: datetime = Field(default_factory=utcnow)
    status: AttemptOutcome
    status_code: Optional[int] = None
    response_time_ms: float = 0.0
    request_headers: dict[str, str] = Field(default_factory=dict)
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_condition: Optional[RetryCondition] = None
    retryable: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status is AttemptOutcome.SUCCESS


def new_event_id() -> str:
    return secrets.token_hex(16)


class EventLog(BaseModel):
    """Delivery lifecycle of one event to one subscription."""

    event_type: str
    event_id: str = Field(default_factory=new_event_id)
    subscription_id: str
    triggered_at: datetime = Field(default_factory=utcnow)
    status: EventStatus = EventStatus.PENDING
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    total_attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    body: bytes = Field(default=b"", exclude=True)
    payload_size: int = 0
    response_time_ms: Optional[float] = None

    def is_due(self, now: datetime) -> bool:
        """Pending with a retry time that has passed."""
        return (
            self.status is EventStatus.PENDING
            and self.next_retry_at is not None
            and self.next_retry_at <= now
        )
