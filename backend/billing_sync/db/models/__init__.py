"""Re-export all models so Base.metadata sees them."""

from billing_sync.db.models.processed_event import ProcessedWebhookEvent
from billing_sync.db.models.subscription import Subscription

__all__ = [
    "ProcessedWebhookEvent",
    "Subscription",
]
