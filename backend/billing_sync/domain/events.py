"""Typed webhook events and the decoder that builds them.

Raw processor payloads (plain dicts) are turned into one of a closed set of
event classes at the boundary, so the transition logic never touches
loosely-typed payloads.

Attribution: every handled event must carry the ``account_id`` tag written
into session and subscription metadata at checkout time. Events lacking it
raise ``Unattributable``.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from billing_sync.core.exceptions import InvalidEvent, Unattributable
from billing_sync.domain.plans import PlanCatalog
from billing_sync.domain.subscriptions import PERIOD_BOUND, SubscriptionStatus, normalize_processor_status

# Metadata keys written at checkout time
ACCOUNT_TAG = "account_id"
PLAN_TAG = "plan_id"
CYCLE_TAG = "billing_cycle"

FetchSubscription = Callable[[str], Awaitable[dict]]


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Processor view of one subscription at event time."""

    subscription_id: str
    status: SubscriptionStatus
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    plan_id: str | None


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    created: datetime


@dataclass(frozen=True)
class CheckoutConfirmed(WebhookEvent):
    account_id: str
    plan_id: str
    customer_id: str | None
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionUpdated(WebhookEvent):
    account_id: str
    customer_id: str | None
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionEnded(WebhookEvent):
    account_id: str
    subscription_id: str


@dataclass(frozen=True)
class InvoicePaymentSucceeded(WebhookEvent):
    account_id: str
    invoice_id: str | None
    subscription_id: str


@dataclass(frozen=True)
class InvoicePaymentFailed(WebhookEvent):
    account_id: str
    invoice_id: str | None
    subscription_id: str


@dataclass(frozen=True)
class UnrecognizedEvent(WebhookEvent):
    pass


BillingEvent = (
    CheckoutConfirmed
    | SubscriptionUpdated
    | SubscriptionEnded
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
    | UnrecognizedEvent
)

CHECKOUT_TYPES = frozenset({"checkout.session.completed"})
SUBSCRIPTION_UPDATED_TYPES = frozenset({"customer.subscription.created", "customer.subscription.updated"})
SUBSCRIPTION_ENDED_TYPES = frozenset({"customer.subscription.deleted"})
INVOICE_SUCCEEDED_TYPES = frozenset({"invoice.paid", "invoice.payment_succeeded"})
INVOICE_FAILED_TYPES = frozenset({"invoice.payment_failed"})


# ── Field helpers ───────────────────────────────────────────────────


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidEvent(f"Invalid timestamp: {value!r}") from exc


def _object_id(value: Any) -> str | None:
    """Processor references arrive either as an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _metadata(obj: dict | None) -> dict:
    if not obj:
        return {}
    return obj.get("metadata") or {}


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def snapshot_from_subscription(subscription: dict, catalog: PlanCatalog) -> SubscriptionSnapshot:
    """Build a snapshot from a processor subscription object.

    Period bounds live on the subscription in older API versions and on
    its first item in newer ones.
    """
    subscription_id = subscription.get("id")
    if not subscription_id:
        raise InvalidEvent("Subscription object without id")

    status = normalize_processor_status(subscription.get("status"))
    if status is None:
        raise InvalidEvent(f"Unknown subscription status: {subscription.get('status')!r}")

    item = _first_item(subscription)
    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    price_id = _object_id(item.get("price"))
    plan_id = catalog.plan_for_price(price_id) or _metadata(subscription).get(PLAN_TAG)
    if plan_id is not None and not catalog.has_plan(plan_id):
        plan_id = None

    if status in PERIOD_BOUND and period_end is None:
        raise InvalidEvent(f"Subscription {subscription_id} is {status} without a period end")

    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        status=status,
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        plan_id=plan_id,
    )


def _invoice_subscription(invoice: dict) -> tuple[str | None, dict]:
    """Return (subscription_id, embedded subscription metadata) of an invoice."""
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    details = invoice.get("subscription_details") or parent_details
    subscription_id = _object_id(invoice.get("subscription")) or _object_id(parent_details.get("subscription"))
    return subscription_id, details.get("metadata") or {}


# ── Decoder ─────────────────────────────────────────────────────────


async def decode_event(
    raw: dict,
    *,
    catalog: PlanCatalog,
    fetch_subscription: FetchSubscription,
) -> BillingEvent:
    """Decode a verified processor event into a typed ``BillingEvent``.

    ``fetch_subscription`` is called when the event itself does not carry
    the subscription data a transition needs (checkout sessions, and
    invoices without embedded subscription details).

    Raises:
        InvalidEvent: payload is structurally malformed.
        Unattributable: handled event type without an account tag.
        ProcessorUnavailable: propagated from ``fetch_subscription``.
    """
    if not isinstance(raw, dict):
        raise InvalidEvent("Event payload must be an object")

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise InvalidEvent("Event missing id or type")

    created = _timestamp(raw.get("created"))
    if created is None:
        raise InvalidEvent(f"Event {event_id} missing created timestamp")

    obj = (raw.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise InvalidEvent(f"Event {event_id} missing data.object")

    base = {"event_id": event_id, "event_type": event_type, "created": created}

    if event_type in CHECKOUT_TYPES:
        return await _decode_checkout(base, obj, catalog, fetch_subscription)
    if event_type in SUBSCRIPTION_UPDATED_TYPES:
        account_id = _require_account(base, _metadata(obj).get(ACCOUNT_TAG))
        return SubscriptionUpdated(
            **base,
            account_id=account_id,
            customer_id=_object_id(obj.get("customer")),
            subscription=snapshot_from_subscription(obj, catalog),
        )
    if event_type in SUBSCRIPTION_ENDED_TYPES:
        account_id = _require_account(base, _metadata(obj).get(ACCOUNT_TAG))
        subscription_id = obj.get("id")
        if not subscription_id:
            raise InvalidEvent(f"Event {event_id} subscription without id")
        return SubscriptionEnded(**base, account_id=account_id, subscription_id=subscription_id)
    if event_type in INVOICE_SUCCEEDED_TYPES or event_type in INVOICE_FAILED_TYPES:
        return await _decode_invoice(base, obj, fetch_subscription)

    return UnrecognizedEvent(**base)


def _require_account(base: dict, account_id: str | None) -> str:
    if not account_id:
        raise Unattributable(base["event_id"], base["event_type"])
    return account_id


async def _decode_checkout(
    base: dict,
    session: dict,
    catalog: PlanCatalog,
    fetch_subscription: FetchSubscription,
) -> BillingEvent:
    subscription_id = _object_id(session.get("subscription"))
    if session.get("mode", "subscription") != "subscription" or not subscription_id:
        # One-off payments do not touch the subscription record
        return UnrecognizedEvent(**base)

    metadata = _metadata(session)
    account_id = _require_account(base, metadata.get(ACCOUNT_TAG) or session.get("client_reference_id"))

    subscription = session.get("subscription")
    if not isinstance(subscription, dict):
        subscription = await fetch_subscription(subscription_id)
    snapshot = snapshot_from_subscription(subscription, catalog)

    plan_id = metadata.get(PLAN_TAG) or snapshot.plan_id
    if not catalog.has_plan(plan_id):
        raise InvalidEvent(f"Event {base['event_id']} references unknown plan {plan_id!r}")

    return CheckoutConfirmed(
        **base,
        account_id=account_id,
        plan_id=plan_id,
        customer_id=_object_id(session.get("customer")),
        subscription=snapshot,
    )


async def _decode_invoice(base: dict, invoice: dict, fetch_subscription: FetchSubscription) -> BillingEvent:
    subscription_id, metadata = _invoice_subscription(invoice)
    if not subscription_id:
        # One-off invoices do not touch the subscription record
        return UnrecognizedEvent(**base)

    account_id = metadata.get(ACCOUNT_TAG)
    if not account_id:
        subscription = await fetch_subscription(subscription_id)
        account_id = _metadata(subscription).get(ACCOUNT_TAG)
    account_id = _require_account(base, account_id)

    event_class = InvoicePaymentFailed if base["event_type"] in INVOICE_FAILED_TYPES else InvoicePaymentSucceeded
    return event_class(
        **base,
        account_id=account_id,
        invoice_id=invoice.get("id"),
        subscription_id=subscription_id,
    )
