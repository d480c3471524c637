"""In-memory stand-ins for external collaborators."""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from creditgate.features.billing.provider import (
    BillingProviderError,
    GatewaySubscription,
    GatewaySubscriptionRef,
)
from creditgate.features.billing.razorpay_provider import verify_payment, verify_webhook

TEST_KEY_SECRET = "rzp_test_secret"
TEST_WEBHOOK_SECRET = "whsec_test"
TEST_PRO_PLAN_ID = "plan_pro_test"


class FakeGateway:
    """Deterministic billing gateway; tests drive period bounds explicitly."""

    def __init__(self, key_secret: str = TEST_KEY_SECRET, webhook_secret: str = TEST_WEBHOOK_SECRET):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.customers: Dict[str, str] = {}
        self.subscriptions: Dict[str, GatewaySubscription] = {}
        self.cancellations: List[Tuple[str, bool]] = []
        self.customer_calls = 0
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def create_customer(self, email: str, name: Optional[str] = None, user_id: Optional[str] = None) -> str:
        self.customer_calls += 1
        if email not in self.customers:
            self.customers[email] = self._next("cust")
        return self.customers[email]

    def create_subscription(self, provider_plan_id: str, customer_email: str, customer_name: Optional[str] = None, total_cycles: int = 12) -> GatewaySubscriptionRef:
        sub_id = self._next("sub")
        self.subscriptions[sub_id] = GatewaySubscription(
            provider_subscription_id=sub_id,
            status="created",
            provider_plan_id=provider_plan_id,
            current_period_start=None,
            current_period_end=None,
            notes={"customer_email": customer_email},
        )
        return GatewaySubscriptionRef(provider_subscription_id=sub_id, provider_plan_id=provider_plan_id)

    def add_subscription(self, sub_id: str, plan_id: str = TEST_PRO_PLAN_ID, email: Optional[str] = None) -> None:
        self.subscriptions[sub_id] = GatewaySubscription(
            provider_subscription_id=sub_id,
            status="created",
            provider_plan_id=plan_id,
            current_period_start=None,
            current_period_end=None,
            notes={"customer_email": email} if email else {},
        )

    def set_period(self, sub_id: str, start: datetime, end: datetime, status: str = "active") -> None:
        sub = self.subscriptions[sub_id]
        sub.current_period_start = start
        sub.current_period_end = end
        sub.status = status

    def get_subscription(self, provider_subscription_id: str) -> GatewaySubscription:
        sub = self.subscriptions.get(provider_subscription_id)
        if sub is None:
            raise BillingProviderError("The id provided does not exist")
        return GatewaySubscription(**vars(sub))

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_cycle_end: bool) -> None:
        self.cancellations.append((provider_subscription_id, cancel_at_cycle_end))
        if not cancel_at_cycle_end:
            self.subscriptions[provider_subscription_id].status = "cancelled"

    def verify_payment_signature(self, payment_id: str, subscription_id: str, signature: str) -> bool:
        return verify_payment(self.key_secret, payment_id, subscription_id, signature)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        return verify_webhook(self.webhook_secret, raw_payload, signature)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> datetime:
        self.now = self.now + delta
        return self.now
