"""Webhook event processor: verify, decode, apply, notify.

The processor is the only writer of status, period fields and
``cancel_at_period_end``. Failures are raised as ``BillingError`` subclasses
whose status codes drive the processor's redelivery:

- ``SignatureInvalid`` / ``InvalidEvent``: 400, not worth redelivering
- ``Unattributable``: 422 plus an operator alert; never silently dropped
- ``StoreWriteFailed`` / ``ProcessorUnavailable``: 503, redeliver
"""

import json
from dataclasses import dataclass

import structlog

from billing_sync.core.exceptions import InvalidEvent, Unattributable
from billing_sync.domain.events import (
    BillingEvent,
    CheckoutConfirmed,
    InvoicePaymentFailed,
    SubscriptionEnded,
    UnrecognizedEvent,
    decode_event,
)
from billing_sync.domain.plans import PlanCatalog
from billing_sync.metrics.cloudwatch import emit_business_event
from billing_sync.services.notifier import StatusNotifier
from billing_sync.services.processor import StripeGateway, verify_webhook_signature
from billing_sync.services.subscription_store import SubscriptionStore, TransitionOutcome

logger = structlog.get_logger(__name__)

# Business metric emitted per applied transition
_BUSINESS_EVENTS: dict[type, str] = {
    CheckoutConfirmed: "subscription_activated",
    SubscriptionEnded: "subscription_canceled",
    InvoicePaymentFailed: "payment_failed",
}


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str


class WebhookEventProcessor:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: StripeGateway,
        catalog: PlanCatalog,
        notifier: StatusNotifier | None = None,
        webhook_secret: str | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier or StatusNotifier(None)
        self.webhook_secret = webhook_secret

    async def handle(self, payload: bytes, sig_header: str | None) -> WebhookResult:
        """Process one signed delivery end to end."""
        verify_webhook_signature(payload, sig_header, self.webhook_secret)

        try:
            raw = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidEvent("Invalid payload") from exc

        try:
            event = await decode_event(
                raw,
                catalog=self.catalog,
                fetch_subscription=self.gateway.retrieve_subscription,
            )
        except Unattributable as exc:
            logger.error(
                "webhook_unattributable",
                event_id=exc.event_id,
                event_type=exc.event_type,
                detail=exc.detail,
            )
            await emit_business_event("webhook_unattributable")
            raise

        return await self.apply(event)

    async def apply(self, event: BillingEvent) -> WebhookResult:
        """Apply a decoded event to the store."""
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if isinstance(event, UnrecognizedEvent):
            log.info("webhook_event_ignored")
            return WebhookResult(event.event_id, event.event_type, "ignored")

        log = log.bind(account_id=event.account_id)
        result = await self.store.apply_event(event)

        if result.outcome == TransitionOutcome.DUPLICATE:
            log.info("webhook_duplicate_event_ignored")
        elif result.outcome == TransitionOutcome.STALE:
            log.info("webhook_event_stale", current_status=result.record.status if result.record else None)
        elif result.outcome == TransitionOutcome.MISSING_RECORD:
            log.warning("webhook_event_for_unknown_account")
        elif result.outcome == TransitionOutcome.LOGGED:
            log.info("invoice_payment_succeeded", invoice_id=getattr(event, "invoice_id", None))
        else:
            log.info(
                "subscription_transition_applied",
                status=result.record.status if result.record else None,
                plan_id=result.record.plan_id if result.record else None,
            )
            if result.record is not None:
                await self.notifier.publish(result.record, event.event_id)
            business_event = _BUSINESS_EVENTS.get(type(event))
            if business_event:
                await emit_business_event(business_event, account_id=event.account_id)

        return WebhookResult(event.event_id, event.event_type, result.outcome.value)
