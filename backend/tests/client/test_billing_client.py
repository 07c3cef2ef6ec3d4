"""Tests for the billing API client using httpx.MockTransport."""

import json

import httpx
import pytest

from billing_sync.client.billing_client import BillingClient
from billing_sync.client.credentials import Credentials
from billing_sync.core.exceptions import InvalidPlan, NoSubscription, ProcessorUnavailable, Unauthenticated

pytestmark = pytest.mark.unit

CREDENTIALS = Credentials("token-1")


def _client(handler) -> BillingClient:
    return BillingClient("https://api.flow247.test", transport=httpx.MockTransport(handler))


async def test_start_checkout_sends_token_and_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"checkout_url": "https://checkout.stripe.test/cs_1"})

    async with _client(handler) as client:
        url = await client.start_checkout(CREDENTIALS, plan_id="starter", billing_cycle="annually")

    assert url == "https://checkout.stripe.test/cs_1"
    assert seen["path"] == "/api/billing/checkout"
    assert seen["auth"] == "Bearer token-1"
    assert seen["body"] == {"plan_id": "starter", "billing_cycle": "annually", "price_reference": None}


async def test_open_portal_and_get_status():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/billing/portal":
            return httpx.Response(200, json={"portal_url": "https://billing.stripe.test/p/1"})
        return httpx.Response(200, json={"status": "active", "is_active": True})

    async with _client(handler) as client:
        assert await client.open_portal(CREDENTIALS) == "https://billing.stripe.test/p/1"
        assert (await client.get_status(CREDENTIALS))["is_active"] is True


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (401, {"detail": "Token expired", "code": "unauthenticated"}, Unauthenticated),
        (400, {"detail": "Unknown plan", "code": "invalid_plan"}, InvalidPlan),
        (404, {"detail": "No billing account", "code": "no_subscription"}, NoSubscription),
        (503, {"detail": "Processor down", "code": "processor_unavailable"}, ProcessorUnavailable),
        (502, {"detail": "Bad gateway"}, ProcessorUnavailable),
        (401, {"detail": "Not authenticated"}, Unauthenticated),
    ],
)
async def test_error_responses_map_to_taxonomy(status_code, body, expected):
    async with _client(lambda request: httpx.Response(status_code, json=body)) as client:
        with pytest.raises(expected) as exc_info:
            await client.get_status(CREDENTIALS)

    assert exc_info.value.detail == body["detail"]


async def test_network_failure_is_processor_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(ProcessorUnavailable):
            await client.open_portal(CREDENTIALS)
