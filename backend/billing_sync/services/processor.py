"""Stripe gateway: the only module that talks to the payment processor.

All SDK calls go through the async variants (``*_async``) and are retried
with exponential backoff on transient failures. Whatever still fails is
surfaced as ``ProcessorUnavailable``; price/plan rejections become
``InvalidPlan``. Processor secrets never leave this module.
"""

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_sync.core.config import get_settings
from billing_sync.core.exceptions import ConfigurationError, InvalidPlan, ProcessorUnavailable, SignatureInvalid

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _plain(obj) -> dict:
    """Convert an SDK object to a plain dict."""
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeGateway:
    """Thin async wrapper over the Stripe SDK."""

    def __init__(self, api_key: str | None = None, max_attempts: int | None = None, retry_wait=None):
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key
        self._max_attempts = max_attempts or settings.processor_max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    async def _call(self, operation: str, func, **kwargs):
        """Invoke an SDK coroutine with retry on transient processor errors."""
        if not self._api_key:
            raise ProcessorUnavailable("Payment processor is not configured")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                stop=stop_after_attempt(self._max_attempts),
                wait=self._retry_wait,
                reraise=False,
                before_sleep=lambda rs: logger.warning(
                    "processor_call_retrying",
                    operation=operation,
                    attempt=rs.attempt_number,
                    sleep_seconds=rs.next_action.sleep,
                ),
            ):
                with attempt:
                    return await func(api_key=self._api_key, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error("processor_unavailable", operation=operation, error=str(last), error_type=type(last).__name__)
            raise ProcessorUnavailable(f"Payment processor unavailable during {operation}") from last
        except stripe.InvalidRequestError as exc:
            if exc.param and "price" in exc.param:
                raise InvalidPlan(f"Price rejected by processor: {exc.user_message or exc}") from exc
            logger.error("processor_invalid_request", operation=operation, error=str(exc), param=exc.param)
            raise ProcessorUnavailable(f"Payment processor rejected {operation}") from exc
        except stripe.StripeError as exc:
            logger.error("processor_error", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise ProcessorUnavailable(f"Payment processor error during {operation}") from exc

    async def create_customer(self, account_id: str, email: str | None = None) -> str:
        """Create a processor customer for an account and return its ID.

        The idempotency key makes concurrent creations for one account
        return the same customer.
        """
        params = {"metadata": {"account_id": account_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            "create_customer",
            stripe.Customer.create_async,
            idempotency_key=f"customer-create-{account_id}",
            **params,
        )
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_reference: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Open a subscription-mode checkout and return its hosted URL."""
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create_async,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_reference, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=metadata.get("account_id"),
            metadata=metadata,
            subscription_data={"metadata": metadata},
            allow_promotion_codes=True,
        )
        return session.url

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        portal = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create_async,
            customer=customer_id,
            return_url=return_url,
        )
        return portal.url

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve_async,
            id=subscription_id,
        )
        return _plain(subscription)


def verify_webhook_signature(payload: bytes, sig_header: str | None, secret: str | None = None) -> None:
    """Check the processor signature over the raw request body.

    Raises:
        ConfigurationError: no webhook secret configured (fail closed).
        SignatureInvalid: header missing, malformed, stale, or not matching.
    """
    secret = secret if secret is not None else get_settings().stripe_webhook_secret
    if not secret:
        logger.error("stripe_webhook_secret_missing")
        raise ConfigurationError("Webhook endpoint is not configured")
    if not sig_header:
        raise SignatureInvalid("Missing stripe-signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            secret,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except UnicodeDecodeError as exc:
        raise SignatureInvalid("Payload is not valid UTF-8") from exc
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid("Invalid signature") from exc
