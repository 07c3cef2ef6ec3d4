"""Plan catalog: plan keys, billing cycles and processor price references.

The catalog is owned outside this service; price references come from
configuration and are read-only here.
"""

from dataclasses import dataclass, field
from enum import StrEnum

from billing_sync.core.config import Settings, get_settings
from billing_sync.core.exceptions import InvalidPlan
from billing_sync.domain.subscriptions import FREE_PLAN_ID


class BillingCycle(StrEnum):
    MONTHLY = "monthly"
    ANNUALLY = "annually"


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    description: str
    monthly_price_usd: int
    annual_price_usd: int  # per month, billed yearly


PLANS: dict[str, Plan] = {
    FREE_PLAN_ID: Plan(FREE_PLAN_ID, "Free", "Basic access to explore the platform", 0, 0),
    "starter": Plan("starter", "Starter", "Perfect for small freight brokers getting started", 49, 39),
    "professional": Plan(
        "professional", "Professional", "For growing logistics companies with advanced needs", 149, 119
    ),
    "enterprise": Plan("enterprise", "Enterprise", "Full-scale solution for large freight operations", 499, 399),
}

PAID_PLAN_IDS = ("starter", "professional", "enterprise")


@dataclass
class PlanCatalog:
    """Bidirectional mapping between (plan, cycle) and processor price IDs."""

    prices: dict[tuple[str, BillingCycle], str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PlanCatalog":
        settings = settings or get_settings()
        prices: dict[tuple[str, BillingCycle], str] = {}
        for plan_id in PAID_PLAN_IDS:
            for cycle in BillingCycle:
                price = getattr(settings, f"stripe_price_{plan_id}_{cycle.value}", "")
                if price:
                    prices[(plan_id, cycle)] = price
        return cls(prices=prices)

    def missing_prices(self) -> list[str]:
        """Setting names of paid plan/cycle pairs without a price reference."""
        return [
            f"stripe_price_{plan_id}_{cycle.value}"
            for plan_id in PAID_PLAN_IDS
            for cycle in BillingCycle
            if (plan_id, cycle) not in self.prices
        ]

    def has_plan(self, plan_id: str | None) -> bool:
        return plan_id in PLANS

    def plan_name(self, plan_id: str) -> str:
        plan = PLANS.get(plan_id)
        return plan.name if plan else plan_id

    def resolve_price(self, plan_id: str, billing_cycle: str, price_reference: str | None = None) -> str:
        """Return the price reference for a plan/cycle pair.

        When the caller supplied a ``price_reference`` it must be the catalog's.

        Raises:
            InvalidPlan: unknown plan or cycle, unpriced plan, or mismatched price.
        """
        if plan_id not in PLANS:
            raise InvalidPlan(f"Unknown plan: {plan_id}")
        try:
            cycle = BillingCycle(billing_cycle)
        except ValueError as exc:
            raise InvalidPlan(f"Unknown billing cycle: {billing_cycle}") from exc

        price = self.prices.get((plan_id, cycle))
        if not price:
            raise InvalidPlan(f"Plan {plan_id} has no {cycle.value} price")
        if price_reference and price_reference != price:
            raise InvalidPlan(f"Price {price_reference} does not match plan {plan_id}/{cycle.value}")
        return price

    def plan_for_price(self, price_reference: str | None) -> str | None:
        """Reverse lookup used to recognise plan changes made in the portal."""
        if not price_reference:
            return None
        for (plan_id, _cycle), price in self.prices.items():
            if price == price_reference:
                return plan_id
        return None

    def listing(self) -> list[dict]:
        """Catalog rows for display, including the unpriced free plan."""
        return [
            {
                "plan_id": plan.plan_id,
                "name": plan.name,
                "description": plan.description,
                "monthly_price_usd": plan.monthly_price_usd,
                "annual_price_usd": plan.annual_price_usd,
                "price_references": {
                    cycle.value: self.prices[(plan.plan_id, cycle)]
                    for cycle in BillingCycle
                    if (plan.plan_id, cycle) in self.prices
                },
            }
            for plan in PLANS.values()
        ]
