"""Self-service portal sessions for accounts that have checked out before."""

import structlog

from billing_sync.core.config import get_settings
from billing_sync.core.exceptions import NoSubscription
from billing_sync.services.processor import StripeGateway
from billing_sync.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)


class PortalSessionIssuer:
    def __init__(self, store: SubscriptionStore, gateway: StripeGateway, frontend_url: str | None = None):
        self.store = store
        self.gateway = gateway
        self.frontend_url = (frontend_url or get_settings().frontend_url).rstrip("/")

    async def issue(self, account_id: str) -> str:
        """Open a portal session for ``account_id``; read-only on the store."""
        record = await self.store.get(account_id)
        if record is None or not record.processor_customer_id:
            raise NoSubscription()

        portal_url = await self.gateway.create_portal_session(
            customer_id=record.processor_customer_id,
            return_url=f"{self.frontend_url}/app/billing",
        )
        logger.info("portal_session_created", account_id=account_id)
        return portal_url
