"""Tests for the webhook event processor: verify, decode, apply, notify."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from billing_sync.core.exceptions import InvalidEvent, SignatureInvalid, StoreWriteFailed, Unattributable
from billing_sync.db.models import ProcessedWebhookEvent
from billing_sync.domain.subscriptions import SubscriptionStatus
from billing_sync.services.webhook_processor import WebhookEventProcessor
from factories import (
    ACCOUNT_ID,
    CUSTOMER_ID,
    WEBHOOK_SECRET,
    checkout_completed,
    encode,
    invoice_event,
    make_event,
    sign_payload,
    subscription_event,
)

pytestmark = pytest.mark.unit

T0 = 1_717_300_000


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def processor(store, gateway, catalog, notifier):
    return WebhookEventProcessor(store, gateway, catalog, notifier, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def emit():
    with patch("billing_sync.services.webhook_processor.emit_business_event", new_callable=AsyncMock) as mock:
        yield mock


async def _deliver(processor, event: dict):
    payload = encode(event)
    return await processor.handle(payload, sign_payload(payload))


async def _claims(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(ProcessedWebhookEvent))).scalar_one()


async def test_checkout_event_activates_and_notifies(processor, store, notifier, emit):
    await store.ensure_customer(ACCOUNT_ID, CUSTOMER_ID)

    result = await _deliver(processor, checkout_completed("evt_1", T0))

    assert result.outcome == "applied"
    record = await store.get(ACCOUNT_ID)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.plan_id == "starter"
    notifier.publish.assert_awaited_once()
    assert notifier.publish.await_args.args[1] == "evt_1"
    emit.assert_awaited_once_with("subscription_activated", account_id=ACCOUNT_ID)


async def test_redelivery_is_acknowledged_without_effect(processor, store, notifier, emit):
    await _deliver(processor, checkout_completed("evt_1", T0))
    notifier.publish.reset_mock()

    result = await _deliver(processor, checkout_completed("evt_1", T0))

    assert result.outcome == "duplicate"
    notifier.publish.assert_not_awaited()


async def test_payment_failed_emits_metric(processor, store, emit):
    await _deliver(processor, checkout_completed("evt_1", T0))
    result = await _deliver(processor, invoice_event("evt_2", "invoice.payment_failed", T0 + 10))

    assert result.outcome == "applied"
    assert (await store.get(ACCOUNT_ID)).status == SubscriptionStatus.PAST_DUE
    emit.assert_any_await("payment_failed", account_id=ACCOUNT_ID)


async def test_subscription_deleted_emits_cancel_metric(processor, store, emit):
    await _deliver(processor, checkout_completed("evt_1", T0))
    await _deliver(processor, subscription_event("evt_2", "customer.subscription.deleted", T0 + 10, status="canceled"))

    assert (await store.get(ACCOUNT_ID)).status == SubscriptionStatus.CANCELED
    emit.assert_any_await("subscription_canceled", account_id=ACCOUNT_ID)


async def test_unattributable_event_alerts_and_mutates_nothing(processor, store, session_factory, emit):
    await store.ensure_customer(ACCOUNT_ID, CUSTOMER_ID)
    before = await store.get(ACCOUNT_ID)

    with pytest.raises(Unattributable):
        await _deliver(processor, checkout_completed("evt_1", T0, account_id=None))

    assert await store.get(ACCOUNT_ID) == before
    assert await _claims(session_factory) == 0
    emit.assert_awaited_once_with("webhook_unattributable")


async def test_unrecognized_event_is_acknowledged(processor, session_factory, notifier):
    result = await _deliver(processor, make_event("evt_1", "customer.created", {"id": "cus_1"}, T0))

    assert result.outcome == "ignored"
    assert await _claims(session_factory) == 0
    notifier.publish.assert_not_awaited()


async def test_bad_signature_is_rejected_before_decoding(processor, gateway, session_factory):
    payload = encode(checkout_completed("evt_1", T0))

    with pytest.raises(SignatureInvalid):
        await processor.handle(payload, sign_payload(payload, secret="whsec_wrong"))

    gateway.retrieve_subscription.assert_not_awaited()
    assert await _claims(session_factory) == 0


async def test_signed_non_json_body_is_invalid(processor):
    payload = b"not json"
    with pytest.raises(InvalidEvent):
        await processor.handle(payload, sign_payload(payload))


async def test_store_failure_propagates_as_retryable(gateway, catalog, notifier):
    failing_store = AsyncMock()
    failing_store.apply_event.side_effect = StoreWriteFailed()
    processor = WebhookEventProcessor(failing_store, gateway, catalog, notifier, webhook_secret=WEBHOOK_SECRET)

    with pytest.raises(StoreWriteFailed) as exc_info:
        await _deliver(processor, checkout_completed("evt_1", T0))

    assert exc_info.value.retryable is True
    notifier.publish.assert_not_awaited()
