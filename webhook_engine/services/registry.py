"""
Subscription Registry

Holds each webhook's immutable config next to its engine-owned mutable
state. Every mutation of that state happens under the state's lock.
"""
import asyncio
from typing import Iterator, Optional

from webhook_engine.config import settings
from webhook_engine.exceptions import SubscriptionNotFoundError
from webhook_engine.models.health import DeliveryStatistics, HealthState, HealthStatus, RateLimitWindow
from webhook_engine.models.subscription import Subscription
from webhook_engine.services.log_store import EventLogRing


class SubscriptionState:
    """Config snapshot plus health, statistics, rate window and log ring of one webhook."""

    def __init__(
        self,
        subscription: Subscription,
        *,
        active: bool = True,
        log_limit: int = settings.WEBHOOK_EVENT_LOG_LIMIT,
        health: Optional[HealthStatus] = None,
        statistics: Optional[DeliveryStatistics] = None,
    ):
        self.subscription = subscription
        self.health = health or HealthStatus(
            is_active=active,
            health=HealthState.HEALTHY if active else HealthState.DISABLED,
            disabled_reason=None if active else "Created inactive",
        )
        self.statistics = statistics or DeliveryStatistics()
        self.rate_window = RateLimitWindow()
        self.logs = EventLogRing(limit=log_limit)
        self.lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.subscription.id

    @property
    def is_active(self) -> bool:
        return self.health.is_active

    def snapshot(self) -> dict:
        """Serializable view for the operator API."""
        return {
            "subscription": self.subscription.model_dump(mode="json", exclude={"secret"}),
            "status": self.health.model_dump(mode="json"),
            "statistics": self.statistics.model_dump(mode="json"),
            "rate_limit": self.rate_window.model_dump(mode="json"),
            "event_log_count": len(self.logs),
        }


class SubscriptionRegistry:
    """In-memory index of webhook states by id and by workspace."""

    def __init__(self, log_limit: int = settings.WEBHOOK_EVENT_LOG_LIMIT):
        self.log_limit = log_limit
        self._states: dict[str, SubscriptionState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[SubscriptionState]:
        return iter(list(self._states.values()))

    def add(self, state: SubscriptionState) -> SubscriptionState:
        self._states[state.id] = state
        return state

    def create(self, subscription: Subscription, **kwargs) -> SubscriptionState:
        return self.add(SubscriptionState(subscription, log_limit=self.log_limit, **kwargs))

    def find(self, subscription_id: str) -> Optional[SubscriptionState]:
        return self._states.get(subscription_id)

    def get(self, subscription_id: str) -> SubscriptionState:
        state = self._states.get(subscription_id)
        if state is None:
            raise SubscriptionNotFoundError(subscription_id)
        return state

    def remove(self, subscription_id: str) -> SubscriptionState:
        state = self._states.pop(subscription_id, None)
        if state is None:
            raise SubscriptionNotFoundError(subscription_id)
        return state

    def for_workspace(self, workspace_id: str) -> list[SubscriptionState]:
        return [state for state in self._states.values() if state.subscription.workspace_id == workspace_id]
