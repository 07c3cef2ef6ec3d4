"""create subscriptions and processed_webhook_events tables

Revision ID: 3b7e2d91c4a0
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7e2d91c4a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the per-account subscription record and the webhook dedupe table."""
    op.create_table(
        "subscriptions",
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("processor_customer_id", sa.String(length=255), nullable=True),
        sa.Column("processor_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("plan_id", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('inactive', 'trialing', 'active', 'past_due', 'canceled')",
            name="ck_subscriptions_subscription_status",
        ),
        sa.PrimaryKeyConstraint("account_id", name="pk_subscriptions"),
        sa.UniqueConstraint("processor_customer_id", name="uq_subscriptions_processor_customer_id"),
    )
    op.create_index(
        "ix_subscriptions_processor_subscription_id",
        "subscriptions",
        ["processor_subscription_id"],
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id", name="pk_processed_webhook_events"),
    )
    op.create_index(
        "ix_processed_webhook_events_processed_at",
        "processed_webhook_events",
        ["processed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_subscriptions_processor_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")
