"""
creditgate/features/subscriptions/service.py

Subscription state machine.

    NONE -> PENDING -> ACTIVE -> CANCEL_PENDING -> CANCELLED
    ACTIVE -> ACTIVE on renewal; CANCELLED -> PENDING on a new purchase.

Period bounds always come from the gateway, never from the client. Row
transitions are conditional UPDATEs on the previously read values; ledger
grants and resets commit in the same transaction as the row change.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from creditgate.core.clock import add_months, as_utc, utc_now
from creditgate.core.database import get_db_session, matches_previous, subscriptions, users
from creditgate.core.errors import InternalError, NotFoundError, ValidationError
from creditgate.features.billing.provider import BillingGateway, GatewaySubscription
from creditgate.features.ledger.service import CreditLedger
from creditgate.features.plans.service import (
    monthly_limit_for,
    provider_plan_id_for,
    require_plan,
)
from creditgate.models.plan import Plan
from creditgate.models.subscription import (
    CreatedSubscription,
    Subscription,
    SubscriptionStatus,
)
from creditgate.models.user import User

logger = logging.getLogger("creditgate.subscriptions")

DEFAULT_MAX_ATTEMPTS = 3


class _ConcurrentUpdate(Exception):
    """A conditional UPDATE matched no row because another writer got there first."""


def _is_live(sub: Optional[Subscription]) -> bool:
    """ACTIVE and still set to bill at the next period."""
    return sub is not None and sub.status == SubscriptionStatus.ACTIVE and not sub.cancel_at_period_end


def _to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_slug=row.plan_slug,
        provider_subscription_id=row.provider_subscription_id,
        provider_plan_id=row.provider_plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
    )


class SubscriptionService:
    def __init__(
        self,
        gateway: BillingGateway,
        ledger: CreditLedger,
        settings_obj,
        session_scope=get_db_session,
        clock=utc_now,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.settings = settings_obj
        self._session_scope = session_scope
        self._clock = clock
        self.max_attempts = max(1, max_attempts)

    # -- reads ---------------------------------------------------------------

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._session_scope() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
        return _to_subscription(row) if row else None

    def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._session_scope() as session:
            row = session.execute(
                select(subscriptions).where(
                    subscriptions.c.provider_subscription_id == provider_subscription_id
                )
            ).first()
        return _to_subscription(row) if row else None

    def _load_user(self, user_id: str) -> User:
        with self._session_scope() as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
        if row is None:
            raise NotFoundError("User not found")
        return User(
            id=row.id,
            external_id=row.external_id,
            email=row.email,
            provider_customer_id=row.provider_customer_id,
        )

    def _paid_plan(self, plan_slug: str) -> Tuple[Plan, str]:
        plan = require_plan(plan_slug)
        if plan.is_free:
            raise ValidationError("Cannot subscribe to free plan")
        return plan, provider_plan_id_for(plan.slug, self.settings)

    # -- create ------------------------------------------------------------

    def _ensure_customer(self, user: User, customer_name: Optional[str]) -> str:
        if user.provider_customer_id:
            return user.provider_customer_id

        customer_id = self.gateway.create_customer(user.email, customer_name, user.id)
        with self._session_scope() as session:
            result = session.execute(
                update(users)
                .where(users.c.id == user.id, users.c.provider_customer_id.is_(None))
                .values(provider_customer_id=customer_id)
            )
            if result.rowcount == 0:
                customer_id = session.execute(
                    select(users.c.provider_customer_id).where(users.c.id == user.id)
                ).scalar_one()
        logger.info("subscription.customer_ready", extra={"user_id": user.id, "customer_id": customer_id})
        return customer_id

    def create(self, user_id: str, plan_slug: str, customer_name: Optional[str] = None) -> CreatedSubscription:
        """
        Start a purchase: make sure the gateway customer exists and create a
        gateway subscription awaiting payment.

        The local row becomes PENDING. A user whose subscription is live and
        not set to cancel at period end is refused; a cancel-pending one stays
        live until the new subscription is activated.
        """
        plan, provider_plan_id = self._paid_plan(plan_slug)
        user = self._load_user(user_id)
        if not user.email:
            raise ValidationError("An email address is required to subscribe")
        current = self.get_subscription(user_id)
        if _is_live(current):
            raise ValidationError("An active subscription already exists; cancel it before subscribing again")

        self._ensure_customer(user, customer_name)
        ref = self.gateway.create_subscription(
            provider_plan_id,
            user.email,
            customer_name,
            total_cycles=getattr(self.settings, "SUBSCRIPTION_TOTAL_CYCLES", 12),
        )

        for attempt in range(self.max_attempts):
            try:
                with self._session_scope() as session:
                    row = session.execute(
                        select(subscriptions).where(subscriptions.c.user_id == user_id)
                    ).first()
                    if row is None:
                        session.execute(
                            insert(subscriptions).values(
                                id=str(uuid.uuid4()),
                                user_id=user_id,
                                plan_slug=plan.slug,
                                provider_subscription_id=ref.provider_subscription_id,
                                provider_plan_id=ref.provider_plan_id,
                                status=SubscriptionStatus.PENDING.value,
                                cancel_at_period_end=False,
                            )
                        )
                    elif row.status == SubscriptionStatus.ACTIVE.value:
                        if not row.cancel_at_period_end:
                            raise ValidationError("An active subscription already exists; cancel it before subscribing again")
                        logger.info(
                            "subscription.replacement_pending",
                            extra={"user_id": user_id, "provider_subscription_id": ref.provider_subscription_id},
                        )
                    else:
                        result = session.execute(
                            update(subscriptions)
                            .where(
                                subscriptions.c.id == row.id,
                                subscriptions.c.status == row.status,
                                subscriptions.c.provider_subscription_id == row.provider_subscription_id,
                            )
                            .values(
                                plan_slug=plan.slug,
                                provider_subscription_id=ref.provider_subscription_id,
                                provider_plan_id=ref.provider_plan_id,
                                status=SubscriptionStatus.PENDING.value,
                                current_period_start=None,
                                current_period_end=None,
                                cancel_at_period_end=False,
                            )
                        )
                        if result.rowcount == 0:
                            raise _ConcurrentUpdate()
                break
            except (IntegrityError, _ConcurrentUpdate):
                logger.warning("subscription.create_conflict", extra={"user_id": user_id, "attempt": attempt + 1})
        else:
            raise InternalError("Could not record subscription due to concurrent updates")

        logger.info(
            "subscription.created",
            extra={"user_id": user_id, "plan": plan.slug, "provider_subscription_id": ref.provider_subscription_id},
        )
        return CreatedSubscription(
            provider_subscription_id=ref.provider_subscription_id,
            provider_plan_id=ref.provider_plan_id,
        )

    # -- activate ------------------------------------------------------------

    def _period_bounds(self, gsub: GatewaySubscription) -> Tuple[datetime, datetime]:
        start = gsub.current_period_start or self._clock()
        end = gsub.current_period_end or add_months(start, 1)
        return start, end

    def activate(self, user_id: str, provider_subscription_id: str, plan_slug: str) -> Subscription:
        """
        Mark a paid subscription ACTIVE and grant the plan's credits on top of
        the current balance.

        Re-activating the same gateway subscription for a period that is
        already recorded grants nothing. A different subscription that is
        still live is cancelled at the gateway before the row is replaced.
        """
        plan, expected_plan_id = self._paid_plan(plan_slug)
        gsub = self.gateway.get_subscription(provider_subscription_id)
        if gsub.provider_plan_id and gsub.provider_plan_id != expected_plan_id:
            raise ValidationError("Subscription does not belong to the requested plan")

        user = self._load_user(user_id)
        owner_email = (gsub.notes or {}).get("customer_email")
        if owner_email and user.email and owner_email.lower() != user.email.lower():
            raise ValidationError("Subscription does not belong to this user")

        start, end = self._period_bounds(gsub)
        bounds_known = gsub.current_period_end is not None
        allotment = monthly_limit_for(plan)

        current = self.get_subscription(user_id)
        if _is_live(current) and current.provider_subscription_id != provider_subscription_id:
            # The row is about to point at the new subscription; the old one must stop billing.
            self.gateway.cancel_subscription(current.provider_subscription_id, False)
            logger.info(
                "subscription.superseded",
                extra={
                    "user_id": user_id,
                    "provider_subscription_id": current.provider_subscription_id,
                    "replaced_by": provider_subscription_id,
                },
            )

        for attempt in range(self.max_attempts):
            try:
                with self._session_scope() as session:
                    owner = session.execute(
                        select(subscriptions.c.user_id).where(
                            subscriptions.c.provider_subscription_id == provider_subscription_id
                        )
                    ).first()
                    if owner and owner.user_id != user_id:
                        raise ValidationError("Subscription does not belong to this user")

                    row = session.execute(
                        select(subscriptions).where(subscriptions.c.user_id == user_id)
                    ).first()

                    if (
                        row is not None
                        and row.provider_subscription_id == provider_subscription_id
                        and row.status == SubscriptionStatus.ACTIVE.value
                        and (
                            not bounds_known
                            or (
                                as_utc(row.current_period_start) == start
                                and as_utc(row.current_period_end) == end
                            )
                        )
                    ):
                        logger.info(
                            "subscription.already_active",
                            extra={"user_id": user_id, "provider_subscription_id": provider_subscription_id},
                        )
                        return _to_subscription(row)

                    values = dict(
                        plan_slug=plan.slug,
                        provider_subscription_id=provider_subscription_id,
                        provider_plan_id=gsub.provider_plan_id or expected_plan_id,
                        status=SubscriptionStatus.ACTIVE.value,
                        current_period_start=start,
                        current_period_end=end,
                        cancel_at_period_end=False,
                    )
                    if row is None:
                        session.execute(
                            insert(subscriptions).values(id=str(uuid.uuid4()), user_id=user_id, **values)
                        )
                    else:
                        result = session.execute(
                            update(subscriptions)
                            .where(
                                subscriptions.c.id == row.id,
                                subscriptions.c.status == row.status,
                                subscriptions.c.provider_subscription_id == row.provider_subscription_id,
                                matches_previous(subscriptions.c.current_period_end, row.current_period_end),
                            )
                            .values(**values)
                        )
                        if result.rowcount == 0:
                            raise _ConcurrentUpdate()

                    self.ledger.grant_additive(user_id, allotment, end, plan.slug, session=session)
            except (IntegrityError, _ConcurrentUpdate):
                logger.warning(
                    "subscription.activate_conflict",
                    extra={"user_id": user_id, "provider_subscription_id": provider_subscription_id, "attempt": attempt + 1},
                )
                continue

            logger.info(
                "subscription.activated",
                extra={
                    "user_id": user_id,
                    "plan": plan.slug,
                    "provider_subscription_id": provider_subscription_id,
                    "period_end": end.isoformat(),
                },
            )
            return self.get_subscription(user_id)

        raise InternalError("Could not activate subscription due to concurrent updates")

    # -- cancel ----------------------------------------------------------------

    def cancel(self, user_id: str, at_period_end: bool = True) -> Subscription:
        """
        Cancel at the gateway, then locally: at period end the subscription
        stays ACTIVE with cancel_at_period_end set; otherwise it is CANCELLED
        now and the next sync demotes the plan.
        """
        sub = self.get_subscription(user_id)
        if sub is None or not sub.provider_subscription_id or sub.status == SubscriptionStatus.CANCELLED:
            raise NotFoundError("No active subscription found")

        keep_until_period_end = at_period_end and sub.status == SubscriptionStatus.ACTIVE
        if keep_until_period_end and sub.cancel_at_period_end:
            return sub
        self.gateway.cancel_subscription(sub.provider_subscription_id, keep_until_period_end)

        with self._session_scope() as session:
            stmt = update(subscriptions).where(
                subscriptions.c.id == sub.id,
                subscriptions.c.provider_subscription_id == sub.provider_subscription_id,
                subscriptions.c.status != SubscriptionStatus.CANCELLED.value,
            )
            if keep_until_period_end:
                stmt = stmt.values(cancel_at_period_end=True)
            else:
                stmt = stmt.values(status=SubscriptionStatus.CANCELLED.value, cancel_at_period_end=False)
            result = session.execute(stmt)

        logger.info(
            "subscription.cancelled",
            extra={
                "user_id": user_id,
                "provider_subscription_id": sub.provider_subscription_id,
                "at_period_end": keep_until_period_end,
                "applied": result.rowcount == 1,
            },
        )
        return self.get_subscription(user_id)

    # -- webhook-driven transitions -------------------------------------------

    def renew(self, provider_subscription_id: str) -> bool:
        """
        Advance the billing period and reset credits to the plan allotment.

        A subscription set to cancel at period end is never renewed; past its
        period end it is moved to CANCELLED instead.

        Returns:
            True if the row changed, False for a replay or stale event

        Raises:
            NotFoundError: unknown gateway subscription
        """
        for attempt in range(self.max_attempts):
            sub = self.get_by_provider_id(provider_subscription_id)
            if sub is None:
                raise NotFoundError("Subscription not found")

            if sub.status == SubscriptionStatus.PENDING:
                self.activate(sub.user_id, provider_subscription_id, sub.plan_slug)
                return True
            if sub.status == SubscriptionStatus.CANCELLED:
                logger.info("subscription.renewal_ignored", extra={"provider_subscription_id": provider_subscription_id, "status": sub.status.value})
                return False
            if sub.cancel_at_period_end:
                return self._close_cancel_pending(sub)

            gsub = self.gateway.get_subscription(provider_subscription_id)
            if gsub.current_period_end is None:
                logger.warning("subscription.renewal_without_period", extra={"provider_subscription_id": provider_subscription_id})
                return False
            start, end = self._period_bounds(gsub)
            if sub.current_period_end is not None and end <= sub.current_period_end:
                logger.info(
                    "subscription.renewal_duplicate",
                    extra={"provider_subscription_id": provider_subscription_id, "period_end": end.isoformat()},
                )
                return False

            with self._session_scope() as session:
                raw_end = session.execute(
                    select(subscriptions.c.current_period_end).where(subscriptions.c.id == sub.id)
                ).scalar_one()
                if as_utc(raw_end) != sub.current_period_end:
                    continue
                result = session.execute(
                    update(subscriptions)
                    .where(
                        subscriptions.c.id == sub.id,
                        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        subscriptions.c.cancel_at_period_end.is_(False),
                        matches_previous(subscriptions.c.current_period_end, raw_end),
                    )
                    .values(current_period_start=start, current_period_end=end)
                )
                if result.rowcount == 0:
                    continue
                # A sync that already ran this period's reset keeps its balance.
                self.ledger.reset_to_plan(
                    sub.user_id,
                    sub.plan_slug,
                    end,
                    session=session,
                    if_reset_at_or_before=sub.current_period_end,
                )

            logger.info(
                "subscription.renewed",
                extra={"user_id": sub.user_id, "provider_subscription_id": provider_subscription_id, "period_end": end.isoformat()},
            )
            return True

        raise InternalError("Could not renew subscription due to concurrent updates")

    def _close_cancel_pending(self, sub: Subscription) -> bool:
        """
        A charge notice for a subscription set to cancel at period end never
        extends it. Once the period is over the row is CANCELLED; before that
        nothing changes.
        """
        now = self._clock()
        if sub.current_period_end is not None and sub.current_period_end > now:
            logger.info(
                "subscription.renewal_ignored",
                extra={"provider_subscription_id": sub.provider_subscription_id, "status": "cancel_pending"},
            )
            return False

        with self._session_scope() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    subscriptions.c.id == sub.id,
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.cancel_at_period_end.is_(True),
                )
                .values(status=SubscriptionStatus.CANCELLED.value, cancel_at_period_end=False)
            )
        applied = result.rowcount == 1
        if applied:
            logger.info(
                "subscription.lapsed_expired",
                extra={"user_id": sub.user_id, "provider_subscription_id": sub.provider_subscription_id},
            )
        return applied

    def expire(self, provider_subscription_id: str) -> bool:
        """Gateway-side cancellation. Returns False if already cancelled."""
        sub = self.get_by_provider_id(provider_subscription_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        if sub.status == SubscriptionStatus.CANCELLED:
            return False

        with self._session_scope() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    subscriptions.c.id == sub.id,
                    subscriptions.c.status != SubscriptionStatus.CANCELLED.value,
                )
                .values(status=SubscriptionStatus.CANCELLED.value, cancel_at_period_end=False)
            )
        applied = result.rowcount == 1
        if applied:
            logger.info("subscription.expired", extra={"user_id": sub.user_id, "provider_subscription_id": provider_subscription_id})
        return applied

    def expire_lapsed(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Cancel subscriptions marked cancel-at-period-end whose period is over."""
        cutoff = now or self._clock()
        with self._session_scope() as session:
            stmt = (
                update(subscriptions)
                .where(
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.cancel_at_period_end.is_(True),
                    subscriptions.c.current_period_end <= cutoff,
                )
                .values(status=SubscriptionStatus.CANCELLED.value, cancel_at_period_end=False)
            )
            if user_id is not None:
                stmt = stmt.where(subscriptions.c.user_id == user_id)
            count = session.execute(stmt).rowcount or 0
        if count:
            logger.info("subscription.lapsed_expired", extra={"count": count, "user_id": user_id})
        return count
