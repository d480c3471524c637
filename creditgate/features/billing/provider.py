"""
Billing gateway protocol.

Defines the narrow capability set the subscription and webhook code needs
from a payment processor, so the processor can be swapped (or faked in
tests) without touching business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from creditgate.core.errors import ExternalServiceError


@dataclass
class GatewaySubscriptionRef:
    """Identifiers returned when a subscription is created."""
    provider_subscription_id: str
    provider_plan_id: str


@dataclass
class GatewaySubscription:
    """Processor-side view of a subscription."""
    provider_subscription_id: str
    status: str  # created, authenticated, active, cancelled, completed, ...
    provider_plan_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    customer_id: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


class BillingGateway(Protocol):
    """
    Protocol for payment processors.

    Implementations must handle:
    - Idempotent customer creation
    - Subscription creation, lookup and cancellation
    - Payment and webhook signature verification (never raising on mismatch)
    """

    def create_customer(self, email: str, name: Optional[str] = None, user_id: Optional[str] = None) -> str:
        """
        Create a customer, or return the existing one for this email.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: processor rejected the request
            ExternalServiceError: processor unreachable after retries
        """
        ...

    def create_subscription(
        self,
        provider_plan_id: str,
        customer_email: str,
        customer_name: Optional[str] = None,
        total_cycles: int = 12,
    ) -> GatewaySubscriptionRef:
        """Create a subscription awaiting the customer's first payment."""
        ...

    def get_subscription(self, provider_subscription_id: str) -> GatewaySubscription:
        """Fetch the processor's current view of a subscription."""
        ...

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_cycle_end: bool) -> None:
        """Cancel now, or at the end of the current billing cycle."""
        ...

    def verify_payment_signature(self, payment_id: str, subscription_id: str, signature: str) -> bool:
        """Check the checkout signature. Returns False on mismatch."""
        ...

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        """Check a webhook body signature. Returns False on mismatch."""
        ...


class BillingProviderError(ExternalServiceError):
    """The processor rejected a request (4xx). Not retried."""
    code = "billing_provider_error"
    status_code = 502
