"""Checkout initiation: ensure a processor customer, then open a checkout."""

import structlog

from billing_sync.core.config import get_settings
from billing_sync.domain.events import ACCOUNT_TAG, CYCLE_TAG, PLAN_TAG
from billing_sync.domain.plans import BillingCycle, PlanCatalog
from billing_sync.metrics.cloudwatch import emit_business_event
from billing_sync.services.processor import StripeGateway
from billing_sync.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)


class CheckoutInitiator:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: StripeGateway,
        catalog: PlanCatalog,
        frontend_url: str | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.frontend_url = (frontend_url or get_settings().frontend_url).rstrip("/")

    async def ensure_customer(self, account_id: str, email: str | None = None) -> str:
        """Return the account's processor customer ID, creating it on first contact.

        Two concurrent first checkouts both call the processor with the same
        idempotency key and then race on the store upsert; the loser adopts
        whatever the winner persisted.
        """
        record = await self.store.get(account_id)
        if record is not None and record.processor_customer_id:
            return record.processor_customer_id

        customer_id = await self.gateway.create_customer(account_id, email=email)
        stored = await self.store.ensure_customer(account_id, customer_id)
        logger.info("processor_customer_created", account_id=account_id, customer_id=stored)
        return stored

    async def start(
        self,
        account_id: str,
        *,
        plan_id: str,
        billing_cycle: str,
        price_reference: str | None = None,
        email: str | None = None,
    ) -> str:
        """Open a subscription checkout and return the hosted redirect URL.

        Raises:
            InvalidPlan: unknown plan/cycle or a price that is not the plan's.
            ProcessorUnavailable: processor unreachable after retries.
            StoreWriteFailed: the customer ID could not be persisted.
        """
        price = self.catalog.resolve_price(plan_id, billing_cycle, price_reference)
        cycle = BillingCycle(billing_cycle)

        customer_id = await self.ensure_customer(account_id, email=email)

        checkout_url = await self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_reference=price,
            metadata={ACCOUNT_TAG: account_id, PLAN_TAG: plan_id, CYCLE_TAG: cycle.value},
            success_url=f"{self.frontend_url}/app/billing?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_url}/pricing?canceled=true",
        )

        logger.info("checkout_session_created", account_id=account_id, plan_id=plan_id, billing_cycle=cycle.value)
        await emit_business_event("checkout_started", account_id=account_id)
        return checkout_url
