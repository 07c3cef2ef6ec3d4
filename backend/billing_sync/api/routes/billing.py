"""Billing routes: checkout, customer portal, webhook intake, and status."""

import asyncio
import json
import time

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from billing_sync.core.auth import AuthenticatedAccount, require_auth
from billing_sync.core.config import get_settings
from billing_sync.db.base import get_session_factory
from billing_sync.db.redis import get_optional_redis
from billing_sync.domain.plans import BillingCycle, PlanCatalog
from billing_sync.domain.projection import status_projection
from billing_sync.services.checkout_service import CheckoutInitiator
from billing_sync.services.notifier import StatusNotifier, status_channel
from billing_sync.services.portal_service import PortalSessionIssuer
from billing_sync.services.processor import StripeGateway
from billing_sync.services.subscription_store import SubscriptionStore
from billing_sync.services.webhook_processor import WebhookEventProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()

# SSE keepalive below the load balancer idle timeout
_STREAM_HEARTBEAT_INTERVAL = 15


# ── Request / Response schemas ──────────────────────────────────────


class CheckoutRequest(BaseModel):
    plan_id: str
    billing_cycle: str = BillingCycle.MONTHLY.value  # validated by the catalog -> InvalidPlan
    price_reference: str | None = None


class CheckoutResponse(BaseModel):
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str


class BillingStatusResponse(BaseModel):
    account_id: str
    plan_id: str
    plan_name: str
    status: str
    is_active: bool
    is_trial: bool
    current_period_start: str | None
    current_period_end: str | None
    cancel_at_period_end: bool
    has_customer: bool
    has_subscription: bool
    updated_at: str | None


class WebhookResponse(BaseModel):
    status: str
    event_id: str
    outcome: str


# ── Dependencies ────────────────────────────────────────────────────
# Override these in tests via app.dependency_overrides.


def get_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings()


def get_store() -> SubscriptionStore:
    return SubscriptionStore(get_session_factory())


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_notifier() -> StatusNotifier:
    return StatusNotifier(get_optional_redis())


def get_checkout_initiator(
    store: SubscriptionStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    catalog: PlanCatalog = Depends(get_catalog),
) -> CheckoutInitiator:
    return CheckoutInitiator(store, gateway, catalog)


def get_portal_issuer(
    store: SubscriptionStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> PortalSessionIssuer:
    return PortalSessionIssuer(store, gateway)


def get_webhook_processor(
    store: SubscriptionStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    catalog: PlanCatalog = Depends(get_catalog),
    notifier: StatusNotifier = Depends(get_notifier),
) -> WebhookEventProcessor:
    return WebhookEventProcessor(store, gateway, catalog, notifier)


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    account: AuthenticatedAccount = Depends(require_auth),
    initiator: CheckoutInitiator = Depends(get_checkout_initiator),
):
    """Open a processor-hosted checkout for one plan/price and return its URL."""
    checkout_url = await initiator.start(
        account.account_id,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
        price_reference=body.price_reference,
        email=account.email,
    )
    return CheckoutResponse(checkout_url=checkout_url)


@router.post("/billing/portal", response_model=PortalResponse)
async def create_portal_session(
    account: AuthenticatedAccount = Depends(require_auth),
    issuer: PortalSessionIssuer = Depends(get_portal_issuer),
):
    """Open a self-service management session for an existing customer."""
    portal_url = await issuer.issue(account.account_id)
    return PortalResponse(portal_url=portal_url)


@router.post("/billing/webhook", response_model=WebhookResponse)
async def processor_webhook(
    request: Request,
    processor: WebhookEventProcessor = Depends(get_webhook_processor),
):
    """Receive a signed processor event.

    Authenticated by signature only. 200 means the event is durably applied
    (or is a no-op); any 5xx makes the processor redeliver.
    """
    body = await request.body()
    result = await processor.handle(body, request.headers.get("stripe-signature"))
    return WebhookResponse(status="ok", event_id=result.event_id, outcome=result.outcome)


@router.get("/billing/status", response_model=BillingStatusResponse)
async def get_billing_status(
    account: AuthenticatedAccount = Depends(require_auth),
    store: SubscriptionStore = Depends(get_store),
):
    """Return the account's stored plan and subscription status."""
    record = await store.get(account.account_id)
    return BillingStatusResponse(**status_projection(account.account_id, record))


@router.get("/billing/status/stream")
async def stream_billing_status(
    request: Request,
    account: AuthenticatedAccount = Depends(require_auth),
    store: SubscriptionStore = Depends(get_store),
    notifier: StatusNotifier = Depends(get_notifier),
):
    """Stream subscription status changes via SSE until the plan is active.

    Emits the stored status on connect, then every committed transition
    published to ``billing:{account_id}:events``. Closes when the status is
    active-like, after ``status_stream_timeout_seconds`` (with a final
    ``timeout`` event), or when the client disconnects. Without Redis the
    stream emits the stored status once and closes.
    """
    account_id = account.account_id
    timeout_seconds = get_settings().status_stream_timeout_seconds
    redis = notifier.redis

    async def event_generator():
        pubsub = None
        channel = status_channel(account_id)
        if redis is not None:
            # Subscribe before the read so no transition falls in between
            pubsub = redis.pubsub()
            await pubsub.subscribe(channel)

        try:
            snapshot = status_projection(account_id, await store.get(account_id))
            yield f"data: {json.dumps({'type': 'subscription.status', **snapshot})}\n\n"
            if snapshot["is_active"] or pubsub is None:
                return

            started = time.monotonic()
            last_heartbeat = started
            while True:
                if await request.is_disconnected():
                    return

                now = time.monotonic()
                if now - started >= timeout_seconds:
                    yield "event: timeout\ndata: {}\n\n"
                    return
                if now - last_heartbeat >= _STREAM_HEARTBEAT_INTERVAL:
                    yield "event: heartbeat\ndata: {}\n\n"
                    last_heartbeat = now

                try:
                    message = await asyncio.wait_for(
                        pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0),
                        timeout=2.0,
                    )
                except TimeoutError:
                    continue

                if message and message["type"] == "message":
                    yield f"data: {message['data']}\n\n"
                    last_heartbeat = time.monotonic()
                    try:
                        data = json.loads(message["data"])
                    except (json.JSONDecodeError, TypeError):
                        continue
                    if data.get("is_active"):
                        return
        finally:
            if pubsub is not None:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/plans")
async def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """Public plan catalog with configured price references."""
    return {"plans": catalog.listing()}
