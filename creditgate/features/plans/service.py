"""
creditgate/features/plans/service.py

Plan catalog.

Handles:
- Static plan definitions (basic, pro)
- Plan lookup and validation
- Mapping paid plans to the processor's plan identifiers
"""

from typing import Dict, Optional

from creditgate.core.errors import ValidationError
from creditgate.models.plan import Plan, UNLIMITED

FREE_PLAN_SLUG = "basic"

# Stored limit for plans with the "unlimited" sentinel.
UNLIMITED_CREDITS = 999_999

DEFAULT_PLANS: Dict[str, Plan] = {
    "basic": Plan(
        slug="basic",
        name="Free",
        monthly_credits=10,
        price=0,
        is_free=True,
    ),
    "pro": Plan(
        slug="pro",
        name="Pro",
        monthly_credits=500,
        price=199,
    ),
}

# Settings attribute holding the processor plan id for each paid plan.
PROVIDER_PLAN_SETTINGS = {
    "pro": "RAZORPAY_PRO_PLAN_ID",
}


def get_plan(slug: Optional[str]) -> Optional[Plan]:
    """Get a plan by slug, or None if unknown."""
    if not slug:
        return None
    return DEFAULT_PLANS.get(slug)


def require_plan(slug: Optional[str]) -> Plan:
    plan = get_plan(slug)
    if plan is None:
        raise ValidationError(f"Invalid plan: {slug}")
    return plan


def get_default_plan() -> Plan:
    return DEFAULT_PLANS[FREE_PLAN_SLUG]


def list_plans() -> list[Plan]:
    return list(DEFAULT_PLANS.values())


def monthly_limit_for(plan: Plan) -> int:
    """Numeric allotment for a plan; the unlimited sentinel maps to a large cap."""
    if plan.monthly_credits == UNLIMITED:
        return UNLIMITED_CREDITS
    return int(plan.monthly_credits)


def provider_plan_id_for(slug: str, settings_obj) -> str:
    """
    Processor plan id for a paid plan.

    Raises:
        ValidationError: if the plan is free, unknown, or not configured
    """
    plan = require_plan(slug)
    if plan.is_free:
        raise ValidationError("Cannot subscribe to free plan")
    setting_name = PROVIDER_PLAN_SETTINGS.get(plan.slug)
    provider_plan_id = getattr(settings_obj, setting_name, None) if setting_name else None
    if not provider_plan_id:
        raise ValidationError(f"Plan {plan.slug} is not available for purchase")
    return provider_plan_id
