"""Push notifications of committed subscription transitions over Redis pub/sub.

Published to ``billing:{account_id}:events`` after the store commit. Delivery
is best-effort: the store stays the source of truth and a Redis failure never
fails the webhook.
"""

import json

import structlog
from redis.asyncio import Redis

from billing_sync.domain.projection import status_projection
from billing_sync.domain.subscriptions import SubscriptionRecord

logger = structlog.get_logger(__name__)

STATUS_CHANGED = "subscription.status_changed"


def status_channel(account_id: str) -> str:
    return f"billing:{account_id}:events"


class StatusNotifier:
    def __init__(self, redis: Redis | None):
        self.redis = redis

    async def publish(self, record: SubscriptionRecord, event_id: str) -> None:
        if self.redis is None:
            return
        payload = {
            "type": STATUS_CHANGED,
            "event_id": event_id,
            **status_projection(record.account_id, record),
        }
        try:
            await self.redis.publish(status_channel(record.account_id), json.dumps(payload))
        except Exception as exc:
            logger.warning(
                "status_notification_failed",
                account_id=record.account_id,
                event_id=event_id,
                error=str(exc),
            )
