"""Tests for the Stripe gateway: async SDK calls, retry, and error mapping."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from tenacity import wait_none

from billing_sync.core.exceptions import ConfigurationError, InvalidPlan, ProcessorUnavailable, SignatureInvalid
from billing_sync.services.processor import StripeGateway, verify_webhook_signature
from factories import WEBHOOK_SECRET, sign_payload

pytestmark = pytest.mark.unit


@pytest.fixture
def gateway():
    return StripeGateway(api_key="sk_test_dummy", max_attempts=3, retry_wait=wait_none())


# ---------------------------------------------------------------------------
# SDK calls
# ---------------------------------------------------------------------------


async def test_create_customer_uses_idempotency_key(gateway):
    with patch("stripe.Customer.create_async", new_callable=AsyncMock) as create:
        create.return_value = MagicMock(id="cus_123")
        customer_id = await gateway.create_customer("acct-1", email="ops@carrier.test")

    assert customer_id == "cus_123"
    kwargs = create.await_args.kwargs
    assert kwargs["idempotency_key"] == "customer-create-acct-1"
    assert kwargs["api_key"] == "sk_test_dummy"
    assert kwargs["metadata"] == {"account_id": "acct-1"}
    assert kwargs["email"] == "ops@carrier.test"


async def test_create_checkout_session_tags_session_and_subscription(gateway):
    metadata = {"account_id": "acct-1", "plan_id": "starter", "billing_cycle": "monthly"}
    with patch("stripe.checkout.Session.create_async", new_callable=AsyncMock) as create:
        create.return_value = MagicMock(url="https://checkout.stripe.test/cs_1")
        url = await gateway.create_checkout_session(
            customer_id="cus_1",
            price_reference="price_starter_mo",
            metadata=metadata,
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

    assert url == "https://checkout.stripe.test/cs_1"
    kwargs = create.await_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_starter_mo", "quantity": 1}]
    assert kwargs["metadata"] == metadata
    assert kwargs["subscription_data"] == {"metadata": metadata}
    assert kwargs["client_reference_id"] == "acct-1"


async def test_create_portal_session(gateway):
    with patch("stripe.billing_portal.Session.create_async", new_callable=AsyncMock) as create:
        create.return_value = MagicMock(url="https://billing.stripe.test/p/1")
        url = await gateway.create_portal_session(customer_id="cus_1", return_url="https://app.test/app/billing")

    assert url == "https://billing.stripe.test/p/1"
    assert create.await_args.kwargs["customer"] == "cus_1"


async def test_retrieve_subscription_returns_plain_dict(gateway):
    sdk_object = MagicMock()
    sdk_object.to_dict.return_value = {"id": "sub_1", "status": "active"}
    with patch("stripe.Subscription.retrieve_async", new_callable=AsyncMock, return_value=sdk_object):
        subscription = await gateway.retrieve_subscription("sub_1")

    assert subscription == {"id": "sub_1", "status": "active"}


# ---------------------------------------------------------------------------
# Retry and error mapping
# ---------------------------------------------------------------------------


async def test_transient_error_is_retried(gateway):
    with patch("stripe.Customer.create_async", new_callable=AsyncMock) as create:
        create.side_effect = [stripe.APIConnectionError("connection reset"), MagicMock(id="cus_retry")]
        customer_id = await gateway.create_customer("acct-1")

    assert customer_id == "cus_retry"
    assert create.await_count == 2


async def test_exhausted_retries_raise_processor_unavailable(gateway):
    with patch("stripe.Customer.create_async", new_callable=AsyncMock) as create:
        create.side_effect = stripe.RateLimitError("slow down")
        with pytest.raises(ProcessorUnavailable) as exc_info:
            await gateway.create_customer("acct-1")

    assert create.await_count == 3
    assert exc_info.value.retryable is True


async def test_rejected_price_is_invalid_plan_without_retry(gateway):
    with patch("stripe.checkout.Session.create_async", new_callable=AsyncMock) as create:
        create.side_effect = stripe.InvalidRequestError("No such price: 'price_x'", "line_items[0][price]")
        with pytest.raises(InvalidPlan):
            await gateway.create_checkout_session(
                customer_id="cus_1",
                price_reference="price_x",
                metadata={"account_id": "acct-1"},
                success_url="https://app.test/ok",
                cancel_url="https://app.test/cancel",
            )

    assert create.await_count == 1


async def test_other_invalid_request_is_processor_unavailable(gateway):
    with patch("stripe.billing_portal.Session.create_async", new_callable=AsyncMock) as create:
        create.side_effect = stripe.InvalidRequestError("No such customer: 'cus_gone'", "customer")
        with pytest.raises(ProcessorUnavailable):
            await gateway.create_portal_session(customer_id="cus_gone", return_url="https://app.test")


async def test_authentication_error_is_processor_unavailable(gateway):
    with patch("stripe.Customer.create_async", new_callable=AsyncMock) as create:
        create.side_effect = stripe.AuthenticationError("Invalid API Key provided")
        with pytest.raises(ProcessorUnavailable):
            await gateway.create_customer("acct-1")

    assert create.await_count == 1


async def test_missing_api_key_fails_without_calling_processor():
    gateway = StripeGateway(api_key="", retry_wait=wait_none())
    with patch("stripe.Customer.create_async", new_callable=AsyncMock) as create:
        with pytest.raises(ProcessorUnavailable):
            await gateway.create_customer("acct-1")
    create.assert_not_awaited()


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------


PAYLOAD = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()


def test_valid_signature_passes():
    verify_webhook_signature(PAYLOAD, sign_payload(PAYLOAD), WEBHOOK_SECRET)


def test_signature_with_wrong_secret_is_rejected():
    with pytest.raises(SignatureInvalid) as exc_info:
        verify_webhook_signature(PAYLOAD, sign_payload(PAYLOAD, secret="whsec_other"), WEBHOOK_SECRET)
    assert isinstance(exc_info.value.__cause__, stripe.SignatureVerificationError)


def test_tampered_payload_is_rejected():
    header = sign_payload(PAYLOAD)
    with pytest.raises(SignatureInvalid):
        verify_webhook_signature(PAYLOAD + b" ", header, WEBHOOK_SECRET)


def test_stale_signature_is_rejected():
    header = sign_payload(PAYLOAD, timestamp=1_600_000_000)
    with pytest.raises(SignatureInvalid):
        verify_webhook_signature(PAYLOAD, header, WEBHOOK_SECRET)


@pytest.mark.parametrize("header", [None, "", "garbage"])
def test_missing_or_malformed_header_is_rejected(header):
    with pytest.raises(SignatureInvalid):
        verify_webhook_signature(PAYLOAD, header, WEBHOOK_SECRET)


def test_missing_secret_fails_closed(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(ConfigurationError):
        verify_webhook_signature(PAYLOAD, sign_payload(PAYLOAD))
