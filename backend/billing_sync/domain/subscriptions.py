"""Subscription lifecycle vocabulary.

Pure domain types for the per-account subscription record.
No DB access, fully deterministic.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

FREE_PLAN_ID = "free"


class SubscriptionStatus(StrEnum):
    """Closed set of subscription states."""

    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that grant paid entitlement
ACTIVE_LIKE: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Statuses that require current_period_end
PERIOD_BOUND: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)

# Processor statuses outside the closed set
_PROCESSOR_STATUS_ALIASES: dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INACTIVE,
    "paused": SubscriptionStatus.INACTIVE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def normalize_processor_status(raw: str | None) -> SubscriptionStatus | None:
    """Map a processor-reported status onto the closed set.

    Returns None for values that are neither a known status nor an alias.
    """
    if not raw:
        return None
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        return _PROCESSOR_STATUS_ALIASES.get(raw)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class SubscriptionRecord:
    """Read-only snapshot of one account's subscription row."""

    account_id: str
    processor_customer_id: str | None = None
    processor_subscription_id: str | None = None
    plan_id: str = FREE_PLAN_ID
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    last_event_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LIKE

    @property
    def is_trial(self) -> bool:
        return self.status == SubscriptionStatus.TRIALING

    @classmethod
    def from_row(cls, row) -> "SubscriptionRecord":
        """Build a snapshot from a ``Subscription`` ORM row."""
        return cls(
            account_id=row.account_id,
            processor_customer_id=row.processor_customer_id,
            processor_subscription_id=row.processor_subscription_id,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            current_period_start=as_utc(row.current_period_start),
            current_period_end=as_utc(row.current_period_end),
            cancel_at_period_end=bool(row.cancel_at_period_end),
            last_event_at=as_utc(row.last_event_at),
            updated_at=as_utc(row.updated_at),
        )
