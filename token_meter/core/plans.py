"""
Subscription plan pricing.

Derives the monthly token grant and the in-app price of a subscription
from a reference model budget.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP


@dataclass(frozen=True)
class SubscriptionPlan:
    """Monthly subscription pricing parameters."""
    price_usd: Decimal = Decimal("5.0")
    reference_budget_usd: Decimal = Decimal("3.0")  # Model spend the grant is sized to
    input_cost_per_million: Decimal = Decimal("0.25")
    output_cost_per_million: Decimal = Decimal("1.25")
    duration_days: int = 30

    def __post_init__(self):
        """Validate plan values."""
        if self.price_usd <= 0:
            raise ValueError("price_usd must be > 0")
        if self.reference_budget_usd < 0:
            raise ValueError("reference_budget_usd must be >= 0")
        if self.input_cost_per_million < 0 or self.output_cost_per_million < 0:
            raise ValueError("token costs must be >= 0")
        if self.duration_days <= 0:
            raise ValueError("duration_days must be > 0")

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.duration_days)


DEFAULT_PLAN = SubscriptionPlan()


def calculate_monthly_tokens(plan: SubscriptionPlan = DEFAULT_PLAN) -> int:
    """Number of tokens granted per subscription period.

    The reference budget is spent at the average of the input and output
    per-million prices.

    Args:
        plan: Plan pricing parameters

    Returns:
        Tokens granted, rounded to the nearest token; 0 if tokens are free
    """
    average_cost_per_million = (plan.input_cost_per_million + plan.output_cost_per_million) / 2
    if average_cost_per_million == 0:
        return 0

    total_millions = plan.reference_budget_usd / average_cost_per_million
    tokens = total_millions * Decimal("1000000")
    return int(tokens.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_star_price(plan: SubscriptionPlan = DEFAULT_PLAN, stars_per_usd: float = 65.0) -> int:
    """Price of one subscription period in the in-app currency.

    Args:
        plan: Plan pricing parameters
        stars_per_usd: Conversion rate of the in-app currency

    Returns:
        Price rounded to a whole number of stars; 0 if the rate is 0
    """
    if stars_per_usd == 0:
        return 0

    price = plan.price_usd * Decimal(str(stars_per_usd))
    return int(price.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
