"""
Entitlement service.

The single gate every metered feature call passes through: reconcile the
subscription, run any due credit reset, then decide.
"""

import logging

from creditgate.core.errors import InsufficientCreditsError
from creditgate.features.ledger.service import CreditLedger
from creditgate.features.plans.service import FREE_PLAN_SLUG
from creditgate.features.subscriptions.service import SubscriptionService
from creditgate.models.entitlement import AccessDecision
from creditgate.models.subscription import SubscriptionState, SubscriptionStatus
from creditgate.models.user import CreditBalance

logger = logging.getLogger("creditgate.entitlements")


class EntitlementService:
    def __init__(self, ledger: CreditLedger, subscriptions: SubscriptionService):
        self.ledger = ledger
        self.subscriptions = subscriptions

    def check_access(self, user_id: str) -> AccessDecision:
        self.subscriptions.expire_lapsed(user_id=user_id)
        sub = self.subscriptions.get_subscription(user_id)
        is_paid_active = (
            sub is not None
            and sub.status == SubscriptionStatus.ACTIVE
            and sub.plan_slug != FREE_PLAN_SLUG
        )
        balance = self.ledger.sync(user_id)

        return AccessDecision(
            has_access=is_paid_active or balance.credits > 0,
            is_paid_active=is_paid_active,
            credits=balance.credits,
            monthly_limit=balance.monthly_limit,
            subscription_status=sub.status.value if sub else SubscriptionState.NONE.value,
            plan_slug=sub.plan_slug if is_paid_active else FREE_PLAN_SLUG,
            cancel_at_period_end=bool(sub and sub.cancel_at_period_end),
            current_period_end=sub.current_period_end if sub else None,
            reset_at=balance.reset_at,
        )

    def consume(self, user_id: str, amount: int = 1) -> int:
        """Check access and take `amount` credits. Returns the remaining balance."""
        decision = self.check_access(user_id)
        if not decision.has_access:
            logger.info("entitlement.denied", extra={"user_id": user_id, "credits": decision.credits})
            raise InsufficientCreditsError("Insufficient credits")
        return self.ledger.deduct(user_id, amount)

    def credits(self, user_id: str) -> CreditBalance:
        self.subscriptions.expire_lapsed(user_id=user_id)
        return self.ledger.sync(user_id)
