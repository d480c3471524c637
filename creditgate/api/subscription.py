"""
Subscription API routes.

- POST /subscription/create: Start a paid subscription (returns gateway ids)
- POST /subscription/verify: Verify checkout signature and activate
- POST /subscription/cancel: Cancel now or at period end
- GET  /subscription/status: Entitlement decision for the current user
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from creditgate.api.deps import get_current_user, get_services
from creditgate.core.auth import Identity, get_current_identity
from creditgate.core.container import Services
from creditgate.core.errors import PaymentVerificationError
from creditgate.models.user import User

logger = logging.getLogger("creditgate.api.subscription")

router = APIRouter(prefix="/subscription", tags=["subscription"])


class CreateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId", min_length=1)


class CreateSubscriptionResponse(BaseModel):
    subscriptionId: str
    planId: str


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(alias="paymentId", min_length=1)
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    signature: str = Field(min_length=1)
    plan_id: str = Field(alias="planId", min_length=1)


class CancelSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cancel_at_period_end: bool = Field(default=True, alias="cancelAtPeriodEnd")


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class SubscriptionStatusResponse(BaseModel):
    hasAccess: bool
    isPaidActive: bool
    credits: int
    monthlyLimit: int
    subscriptionStatus: str
    planId: str
    cancelAtPeriodEnd: bool
    currentPeriodEnd: Optional[datetime] = None
    creditsResetAt: Optional[datetime] = None


@router.post("/create", response_model=CreateSubscriptionResponse)
def create_subscription(
    body: CreateSubscriptionRequest,
    identity: Identity = Depends(get_current_identity),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    created = services.subscriptions.create(user.id, body.plan_id, customer_name=identity.name)
    return CreateSubscriptionResponse(
        subscriptionId=created.provider_subscription_id,
        planId=created.provider_plan_id,
    )


@router.post("/verify", response_model=MessageResponse)
def verify_subscription(
    body: VerifyPaymentRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    if not services.gateway.verify_payment_signature(body.payment_id, body.subscription_id, body.signature):
        logger.warning("subscription.verify_rejected", extra={"user_id": user.id, "provider_subscription_id": body.subscription_id})
        raise PaymentVerificationError("Invalid payment signature")

    services.subscriptions.activate(user.id, body.subscription_id, body.plan_id)
    return MessageResponse(message="Subscription activated successfully")


@router.post("/cancel", response_model=MessageResponse)
def cancel_subscription(
    body: Optional[CancelSubscriptionRequest] = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    at_period_end = body.cancel_at_period_end if body is not None else True
    services.subscriptions.cancel(user.id, at_period_end=at_period_end)
    message = (
        "Subscription will be cancelled at the end of the billing period"
        if at_period_end
        else "Subscription cancelled immediately"
    )
    return MessageResponse(message=message)


@router.get("/status", response_model=SubscriptionStatusResponse)
def subscription_status(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    decision = services.entitlements.check_access(user.id)
    return SubscriptionStatusResponse(
        hasAccess=decision.has_access,
        isPaidActive=decision.is_paid_active,
        credits=decision.credits,
        monthlyLimit=decision.monthly_limit,
        subscriptionStatus=decision.subscription_status,
        planId=decision.plan_slug,
        cancelAtPeriodEnd=decision.cancel_at_period_end,
        currentPeriodEnd=decision.current_period_end,
        creditsResetAt=decision.reset_at,
    )
