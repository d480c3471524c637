"""
creditgate/models/subscription.py

Subscription record plus the derived lifecycle state.

Stored status is one of pending / active / cancelled; the absence of a row
means the user never subscribed. CANCEL_PENDING is derived from
active + cancel_at_period_end.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


class SubscriptionState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    CANCEL_PENDING = "cancel_pending"
    CANCELLED = "cancelled"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_slug: str
    provider_subscription_id: str
    provider_plan_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @property
    def state(self) -> SubscriptionState:
        return state_of(self)


def state_of(sub: Optional[Subscription]) -> SubscriptionState:
    if sub is None:
        return SubscriptionState.NONE
    if sub.status == SubscriptionStatus.PENDING:
        return SubscriptionState.PENDING
    if sub.status == SubscriptionStatus.CANCELLED:
        return SubscriptionState.CANCELLED
    if sub.cancel_at_period_end:
        return SubscriptionState.CANCEL_PENDING
    return SubscriptionState.ACTIVE


class CreatedSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_subscription_id: str
    provider_plan_id: str
