from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite dev/test databases usable.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class AiRateLimitState(Base):
    __tablename__ = "ai_rate_limit_states"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "operation", name="uq_ai_rate_limit_states_scope"),
        Index("ix_ai_rate_limit_states_window_start", "window_start_ms"),
    )

    # One fixed-window accounting row per subscriber/operation pair.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(String, index=True)
    operation: Mapped[str] = mapped_column(String)
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Dollar amounts in major units; rounded on write to bound float drift.
    total_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    tokens_consumed: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Epoch milliseconds keep window math identical across Postgres and SQLite.
    window_start_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_request_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class SubscriptionRecord(Base):
    __tablename__ = "subscription_records"
    __table_args__ = (
        Index("ix_subscription_records_external_id", "external_subscription_id"),
    )

    # Status is written only by webhook reconciliation, never by client requests.
    subscriber_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_subscription_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_identifier: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_period: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_minor_units: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    granted_features: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    trial_start_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    trial_end_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_trial_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_period_end_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Pending end-of-period cancellation; access continues until the period ends.
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_applied_event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider metadata with subscriber identifiers masked.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        Index("ix_processed_webhook_events_processed_at", "processed_at"),
    )

    # Ledger of applied deliveries; the unique key short-circuits redelivery.
    idempotency_key: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    subscriber_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
