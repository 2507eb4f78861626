"""
Log Store

Bounded per-webhook history of event logs plus trailing-window statistics.
"""
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterator, Optional

from pydantic import BaseModel, Field

from webhook_engine.config import settings
from webhook_engine.models.event_log import EventLog, EventStatus


class EventLogRing:
    """
    Event logs in creation order, capped at `limit`.

    Appending past the cap evicts the oldest entries whatever their status;
    the evicted logs are returned so the caller can report lost retries.
    """

    def __init__(self, limit: int = settings.WEBHOOK_EVENT_LOG_LIMIT):
        if limit < 1:
            raise ValueError("event log limit must be at least 1")
        self.limit = limit
        self._logs: OrderedDict[str, EventLog] = OrderedDict()

    def __len__(self) -> int:
        return len(self._logs)

    def __iter__(self) -> Iterator[EventLog]:
        return iter(list(self._logs.values()))

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._logs

    def append(self, log: EventLog) -> list[EventLog]:
        self._logs[log.event_id] = log
        evicted = []
        while len(self._logs) > self.limit:
            _, oldest = self._logs.popitem(last=False)
            evicted.append(oldest)
        return evicted

    def get(self, event_id: str) -> Optional[EventLog]:
        return self._logs.get(event_id)

    def recent(self, limit: int = 20) -> list[EventLog]:
        """Newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._logs.values()))[:limit]

    def pending(self) -> list[EventLog]:
        return [log for log in self._logs.values() if log.status is EventStatus.PENDING]

    def remove_older_than(self, cutoff: datetime) -> int:
        stale = [event_id for event_id, log in self._logs.items() if log.triggered_at < cutoff]
        for event_id in stale:
            del self._logs[event_id]
        return len(stale)

    def clear(self) -> None:
        self._logs.clear()


class LogStatistics(BaseModel):
    """Delivery statistics over a trailing window."""
    days: int
    total_events: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    cancelled: int = 0
    success_rate: float = 0.0
    average_attempts: float = 0.0
    events_by_type: dict[str, int] = Field(default_factory=dict)


def compute_statistics(logs: EventLogRing, days: int, now: datetime) -> LogStatistics:
    """Aggregate logs triggered within the last `days` days."""
    cutoff = now - timedelta(days=days)
    recent = [log for log in logs if log.triggered_at >= cutoff]

    stats = LogStatistics(days=days, total_events=len(recent))
    if not recent:
        return stats

    counts = {status: 0 for status in EventStatus}
    for log in recent:
        counts[log.status] += 1
        stats.events_by_type[log.event_type] = stats.events_by_type.get(log.event_type, 0) + 1

    stats.delivered = counts[EventStatus.DELIVERED]
    stats.failed = counts[EventStatus.FAILED]
    stats.pending = counts[EventStatus.PENDING]
    stats.cancelled = counts[EventStatus.CANCELLED]
    stats.average_attempts = sum(log.total_attempts for log in recent) / len(recent)
    stats.success_rate = stats.delivered / len(recent) * 100
    return stats
