"""
Shared fixtures for webhook engine tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from webhook_engine.models.event import DomainEvent, EntityRefs
from webhook_engine.models.event_log import AttemptOutcome, DeliveryAttempt
from webhook_engine.models.subscription import RetryCondition, Subscription
from webhook_engine.models.webhook import Base


START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected into the engine."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDispatcher:
    """
    Stands in for the HTTP dispatcher.

    Returns queued outcomes in order (success once the queue is empty) and
    can hold calls at a gate to simulate a slow endpoint, either every call
    or only those for one subscription.
    """

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.gates = {}
        self.started = asyncio.Event()
        self.closed = False

    def hold(self, subscription_id=None) -> asyncio.Event:
        gate = self.gates[subscription_id] = asyncio.Event()
        return gate

    async def dispatch(self, subscription, log, attempt_number):
        self.calls.append((subscription.id, log.event_id, attempt_number))
        self.started.set()
        gate = self.gates.get(subscription.id) or self.gates.get(None)
        if gate is not None:
            await gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else "success"
        return make_attempt(attempt_number, outcome)

    async def aclose(self):
        self.closed = True


def make_attempt(attempt_number: int, outcome: str = "success") -> DeliveryAttempt:
    if outcome == "success":
        return DeliveryAttempt(
            attempt_number=attempt_number,
            status=AttemptOutcome.SUCCESS,
            status_code=200,
            response_time_ms=40.0,
        )
    if outcome == "timeout":
        return DeliveryAttempt(
            attempt_number=attempt_number,
            status=AttemptOutcome.TIMEOUT,
            response_time_ms=30000.0,
            error="request timed out",
            error_code="timeout",
            retry_condition=RetryCondition.TIMEOUT,
        )
    return DeliveryAttempt(
        attempt_number=attempt_number,
        status=AttemptOutcome.FAILED,
        status_code=500,
        response_time_ms=15.0,
        error="HTTP 500",
        error_code="http_error",
        retry_condition=RetryCondition.SERVER_ERROR,
    )


def make_subscription(**overrides) -> Subscription:
    config = {
        "workspace_id": "ws-1",
        "name": "Docs hook",
        "url": "https://hooks.example.com/receive",
        "events": ["document.created", "document.updated"],
        "secret": "s3cret",
    }
    config.update(overrides)
    return Subscription.from_config(config)


def make_event(**overrides) -> DomainEvent:
    data = {
        "type": "document.created",
        "workspace_id": "ws-1",
        "entity_refs": EntityRefs(document_id="doc-1", folder_id="folder-1", user_id="user-1"),
        "tags": ["contract"],
        "data": {"document": {"id": "doc-1", "title": "Q3 plan", "status": "draft"}},
        "occurred_at": START,
    }
    data.update(overrides)
    return DomainEvent(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def subscription_factory():
    return make_subscription


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def attempt_factory():
    return make_attempt


@pytest.fixture
def dispatcher_factory():
    return FakeDispatcher


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with the webhook tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
