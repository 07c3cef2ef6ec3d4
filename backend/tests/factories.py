"""Processor payload builders shared by the test suite."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

import jwt

ACCOUNT_ID = "acct-0001"
CUSTOMER_ID = "cus_0001"
SUBSCRIPTION_ID = "sub_0001"
WEBHOOK_SECRET = "whsec_test_secret"

PERIOD_START = 1_717_200_000  # 2024-06-01T00:00:00Z
PERIOD_END = 1_719_792_000  # 2024-07-01T00:00:00Z


def ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=UTC)


def make_subscription(
    subscription_id: str = SUBSCRIPTION_ID,
    *,
    account_id: str | None = ACCOUNT_ID,
    status: str = "active",
    price: str = "price_starter_mo",
    period_start: int | None = PERIOD_START,
    period_end: int | None = PERIOD_END,
    cancel_at_period_end: bool = False,
    customer: str = CUSTOMER_ID,
) -> dict:
    metadata = {"account_id": account_id, "plan_id": "starter"} if account_id else {}
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "metadata": metadata,
        "items": {"data": [{"id": "si_1", "price": {"id": price}}]},
    }


def make_event(event_id: str, event_type: str, obj: dict, created: int) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def checkout_completed(
    event_id: str,
    created: int,
    *,
    account_id: str | None = ACCOUNT_ID,
    plan_id: str = "starter",
    subscription: str | dict = SUBSCRIPTION_ID,
) -> dict:
    metadata = {"plan_id": plan_id, "billing_cycle": "monthly"}
    if account_id:
        metadata["account_id"] = account_id
    session = {
        "id": f"cs_{event_id}",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": CUSTOMER_ID,
        "subscription": subscription,
        "metadata": metadata,
    }
    if account_id:
        session["client_reference_id"] = account_id
    return make_event(event_id, "checkout.session.completed", session, created)


def subscription_event(event_id: str, event_type: str, created: int, **kwargs) -> dict:
    return make_event(event_id, event_type, make_subscription(**kwargs), created)


def invoice_event(
    event_id: str,
    event_type: str,
    created: int,
    *,
    subscription_id: str | None = SUBSCRIPTION_ID,
    account_id: str | None = ACCOUNT_ID,
) -> dict:
    invoice = {"id": f"in_{event_id}", "object": "invoice", "customer": CUSTOMER_ID, "subscription": subscription_id}
    if account_id:
        invoice["subscription_details"] = {"metadata": {"account_id": account_id}}
    return make_event(event_id, event_type, invoice, created)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header the way the processor does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode(event: dict) -> bytes:
    return json.dumps(event).encode()


def make_token(
    account_id: str = ACCOUNT_ID,
    *,
    secret: str = "test-jwt-secret-with-at-least-32-bytes!!",
    audience: str = "authenticated",
    expires_in: int = 3600,
    **claims,
) -> str:
    payload = {"sub": account_id, "aud": audience, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(account_id: str = ACCOUNT_ID, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(account_id, **kwargs)}"}
