"""ProcessedWebhookEvent model for webhook idempotency tracking."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from billing_sync.db.base import Base


class ProcessedWebhookEvent(Base):
    """Processor event IDs already applied to the subscription store.

    Written in the same transaction as the transition, so an event is only
    marked processed once its effect is durable.
    """

    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    account_id = Column(String(255), nullable=True)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
