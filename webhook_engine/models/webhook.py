"""
Webhook storage models.

Subscriptions are stored as their validated config document plus a snapshot
of engine-owned health/statistics. Event logs are stored once they reach a
terminal state, forming the unbounded durable history behind the in-memory
ring.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Declarative base for webhook storage tables."""


class TimestampMixin:
    """Server-managed row timestamps."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class WebhookSubscriptionRecord(Base, TimestampMixin):
    """Persisted webhook configuration and health snapshot."""
    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    health: Mapped[str] = mapped_column(String(20), nullable=False, default="healthy")
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    average_response_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_payload_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<WebhookSubscriptionRecord(id={self.id}, name={self.name}, health={self.health})>"


class WebhookEventLogRecord(Base, TimestampMixin):
    """Terminal event log, kept after it leaves the in-memory ring."""
    __tablename__ = "webhook_event_logs"

    event_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookEventLogRecord(event_id={self.event_id}, status={self.status})>"
