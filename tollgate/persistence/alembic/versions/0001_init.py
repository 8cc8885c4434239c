"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "ai_rate_limit_states",
        sa.Column("key", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tokens_consumed", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("window_start_ms", sa.BigInteger(), nullable=False),
        sa.Column("last_request_at_ms", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("subscriber_id", "operation", name="uq_ai_rate_limit_states_scope"),
    )
    op.create_index("ix_ai_rate_limit_states_subscriber_id", "ai_rate_limit_states", ["subscriber_id"])
    op.create_index("ix_ai_rate_limit_states_window_start", "ai_rate_limit_states", ["window_start_ms"])

    op.create_table(
        "subscription_records",
        sa.Column("subscriber_id", sa.String(), primary_key=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("external_subscription_item_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("plan_identifier", sa.String(), nullable=True),
        sa.Column("plan_slug", sa.String(), nullable=True),
        sa.Column("plan_name", sa.String(), nullable=True),
        sa.Column("billing_period", sa.String(), nullable=True),
        sa.Column("amount_minor_units", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(), nullable=True),
        sa.Column("granted_features", _JSON, nullable=False),
        sa.Column("trial_start_ms", sa.BigInteger(), nullable=True),
        sa.Column("trial_end_ms", sa.BigInteger(), nullable=True),
        sa.Column("is_trial_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_period_end_ms", sa.BigInteger(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_applied_event_type", sa.String(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("updated_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_subscription_records_external_id",
        "subscription_records",
        ["external_subscription_id"],
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("idempotency_key", sa.String(), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_processed_webhook_events_subscriber_id",
        "processed_webhook_events",
        ["subscriber_id"],
    )
    op.create_index(
        "ix_processed_webhook_events_processed_at",
        "processed_webhook_events",
        ["processed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_index("ix_processed_webhook_events_subscriber_id", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_subscription_records_external_id", table_name="subscription_records")
    op.drop_table("subscription_records")
    op.drop_index("ix_ai_rate_limit_states_window_start", table_name="ai_rate_limit_states")
    op.drop_index("ix_ai_rate_limit_states_subscriber_id", table_name="ai_rate_limit_states")
    op.drop_table("ai_rate_limit_states")
