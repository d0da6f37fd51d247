"""
Consultation pricing rules.

Subscription plans discount the consultation price, and some plans include
emergency consultations at no charge. All amounts are integer minor units.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

# Discount percentage per subscription plan
PLAN_DISCOUNTS = {
    "free": 0,
    "basic": 30,
    "basic_family": 30,
    "premium": 50,
    "premium_family": 50,
    "ultra": 70,
    "ultra_family": 70,
}

# Plans with unlimited emergency consultations
UNLIMITED_EMERGENCY_PLANS = frozenset({"premium", "premium_family", "ultra", "ultra_family"})

# Plans with a limited emergency consultation allowance
LIMITED_EMERGENCY_PLANS = frozenset({"basic", "basic_family"})


@dataclass
class ConsultationQuote:
    base_amount: int
    discount_percentage: int
    final_amount: int
    included_in_plan: bool

    @property
    def requires_payment(self) -> bool:
        return not self.included_in_plan and self.final_amount > 0


def discount_for_plan(subscription_plan: Optional[str]) -> int:
    """Discount percentage for a plan; unknown or missing plans get none."""
    if not subscription_plan:
        return 0
    return PLAN_DISCOUNTS.get(subscription_plan, 0)


def apply_plan_discount(base_amount: int, subscription_plan: Optional[str]) -> int:
    discount = discount_for_plan(subscription_plan)
    final = Decimal(base_amount) * (100 - discount) / 100
    return int(final.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def should_charge_for_emergency(
    subscription_plan: Optional[str],
    emergency_consultations_left: Optional[int]
) -> bool:
    """
    Decide whether an emergency consultation is charged.

    Premium and ultra plans include emergencies; basic plans include them
    while the allowance lasts. Everyone else pays.
    """
    if subscription_plan in UNLIMITED_EMERGENCY_PLANS:
        return False
    if (
        subscription_plan in LIMITED_EMERGENCY_PLANS
        and emergency_consultations_left is not None
        and emergency_consultations_left > 0
    ):
        return False
    return True


def quote_consultation(
    base_amount: int,
    subscription_plan: Optional[str] = None,
    is_emergency: bool = False,
    emergency_consultations_left: Optional[int] = None
) -> ConsultationQuote:
    """
    Price a consultation for a patient's plan.

    Args:
        base_amount: Listed price in minor units
        subscription_plan: Patient's plan name (None for no plan)
        is_emergency: Emergency consultation flag
        emergency_consultations_left: Remaining allowance for limited plans

    Returns:
        ConsultationQuote with the amount to hold, or included_in_plan=True
    """
    if base_amount < 0:
        raise ValueError("base_amount must not be negative")

    if is_emergency and not should_charge_for_emergency(subscription_plan, emergency_consultations_left):
        return ConsultationQuote(
            base_amount=base_amount,
            discount_percentage=100,
            final_amount=0,
            included_in_plan=True,
        )

    return ConsultationQuote(
        base_amount=base_amount,
        discount_percentage=discount_for_plan(subscription_plan),
        final_amount=apply_plan_discount(base_amount, subscription_plan),
        included_in_plan=False,
    )
