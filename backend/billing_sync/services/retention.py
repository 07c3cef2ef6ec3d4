"""RetentionSweeper: bounded retention for the webhook dedupe table.

The processor stops redelivering an event after a few days, so event-ID
claims older than ``webhook_event_retention_days`` can be forgotten.

Runs as an asyncio.Task started from the application lifespan. Failures
are logged and the loop keeps going; the next pass retries.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from billing_sync.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)


class RetentionSweeper:
    """Periodically prunes processed webhook event IDs.

    Usage:
        sweeper = RetentionSweeper(store, retention_days=30, interval_seconds=3600)
        task = asyncio.create_task(sweeper.run())
        ...
        task.cancel()
    """

    def __init__(self, store: SubscriptionStore, retention_days: int, interval_seconds: int) -> None:
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.interval_seconds = interval_seconds

    async def sweep_once(self, now: datetime | None = None) -> int:
        """Delete claims older than the retention window. Returns rows removed."""
        now = now or datetime.now(UTC)
        cutoff = now - self.retention
        removed = await self.store.prune_processed_events(cutoff)
        if removed:
            logger.info("processed_events_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def run(self) -> None:
        logger.info("retention_sweeper_started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.warning("retention_sweep_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.sleep(self.interval_seconds)
