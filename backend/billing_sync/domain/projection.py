"""UI-facing projection of a subscription record."""

from billing_sync.domain.plans import PLANS
from billing_sync.domain.subscriptions import SubscriptionRecord


def status_projection(account_id: str, record: SubscriptionRecord | None) -> dict:
    """Entitlement view of an account; accounts without a row read as free/inactive."""
    record = record or SubscriptionRecord(account_id=account_id)
    plan = PLANS.get(record.plan_id)

    def _iso(value):
        return value.isoformat() if value else None

    return {
        "account_id": record.account_id,
        "plan_id": record.plan_id,
        "plan_name": plan.name if plan else record.plan_id,
        "status": record.status.value,
        "is_active": record.is_active,
        "is_trial": record.is_trial,
        "current_period_start": _iso(record.current_period_start),
        "current_period_end": _iso(record.current_period_end),
        "cancel_at_period_end": record.cancel_at_period_end,
        "has_customer": record.processor_customer_id is not None,
        "has_subscription": record.processor_subscription_id is not None,
        "updated_at": _iso(record.updated_at),
    }
