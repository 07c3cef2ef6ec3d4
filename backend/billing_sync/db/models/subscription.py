"""Subscription model, one row per account, synced from the payment processor."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, String

from billing_sync.db.base import Base
from billing_sync.domain.subscriptions import SubscriptionStatus


class Subscription(Base):
    __tablename__ = "subscriptions"

    account_id = Column(String(255), primary_key=True)

    # Processor identifiers
    processor_customer_id = Column(String(255), unique=True, nullable=True)
    processor_subscription_id = Column(String(255), nullable=True, index=True)

    # Plan / lifecycle
    plan_id = Column(String(50), nullable=False, default="free")
    status = Column(
        Enum(
            SubscriptionStatus,
            name="subscription_status",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=SubscriptionStatus.INACTIVE,
    )
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Created time of the newest processor event applied to this row
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
