"""Billing error taxonomy.

Every class carries the HTTP status it maps to, a stable machine-readable
``code`` and whether the caller (user or processor redelivery) may retry.
"""


class BillingError(Exception):
    """Base exception for the billing sync service."""

    status_code: int = 500
    code: str = "billing_error"
    retryable: bool = False

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


class Unauthenticated(BillingError):
    """Caller identity is missing or invalid."""

    status_code = 401
    code = "unauthenticated"


class InvalidPlan(BillingError):
    """Unknown or malformed plan, price or billing cycle."""

    status_code = 400
    code = "invalid_plan"


class NoSubscription(BillingError):
    """No billing account found. Please subscribe to a plan first."""

    status_code = 404
    code = "no_subscription"


class ProcessorUnavailable(BillingError):
    """Payment processor is unreachable or erroring."""

    status_code = 503
    code = "processor_unavailable"
    retryable = True


class Unattributable(BillingError):
    """Webhook event cannot be tied to an account."""

    status_code = 422
    code = "unattributable"

    def __init__(self, event_id: str, event_type: str, detail: str | None = None):
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(detail or f"Event {event_id} ({event_type}) carries no account attribution")


class SignatureInvalid(BillingError):
    """Webhook signature verification failed."""

    status_code = 400
    code = "signature_invalid"


class InvalidEvent(BillingError):
    """Webhook payload is malformed."""

    status_code = 400
    code = "invalid_event"


class StoreWriteFailed(BillingError):
    """Subscription store write failed; the event must be redelivered."""

    status_code = 503
    code = "store_write_failed"
    retryable = True


class ConfigurationError(BillingError):
    """Billing endpoint is not configured."""

    status_code = 503
    code = "not_configured"
