"""
Subscription plan benefits for consultations: price discounts and emergency allowances.
"""

from typing import Optional

# Consultation discount per plan (percent). Unknown plans get no discount.
PLAN_DISCOUNTS = {
    "free": 0,
    "basic": 30,
    "basic_family": 30,
    "premium": 50,
    "premium_family": 50,
    "ultra": 70,
    "ultra_family": 70,
}

# Plans with unlimited emergency consultations included
UNLIMITED_EMERGENCY_PLANS = {"premium", "premium_family", "ultra", "ultra_family"}

# Plans with a limited emergency consultation allowance
LIMITED_EMERGENCY_PLANS = {"basic", "basic_family"}


def get_discount_percentage(plan: Optional[str]) -> int:
    """Get the consultation discount for a plan. No plan means free tier."""
    if not plan:
        return 0
    return PLAN_DISCOUNTS.get(plan, 0)


def calculate_discount(base_price: float, plan: Optional[str]) -> dict:
    """
    Apply the subscription plan discount to a consultation price.

    Returns:
        dict: {"final_price": ..., "discount_percentage": ...}
    """
    discount_percentage = get_discount_percentage(plan)
    discount = (base_price * discount_percentage) / 100
    return {"final_price": base_price - discount, "discount_percentage": discount_percentage}


def should_charge_for_emergency_consultation(
    plan: Optional[str], emergency_consultations_left: Optional[int]
) -> bool:
    """
    Decide whether an emergency consultation is charged.

    Premium and ultra plans (and family variants) include unlimited emergency
    consultations. Basic plans are free only while allowance remains.
    Everything else is charged.
    """
    if plan in UNLIMITED_EMERGENCY_PLANS:
        return False

    if (
        plan in LIMITED_EMERGENCY_PLANS
        and emergency_consultations_left is not None
        and emergency_consultations_left > 0
    ):
        return False

    return True
