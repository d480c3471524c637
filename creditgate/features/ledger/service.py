"""
creditgate/features/ledger/service.py

Credit ledger.

Every mutation is a conditional UPDATE (compare-and-swap) so concurrent
requests for the same user can never double-spend, go negative, or apply a
monthly reset twice. Callers that need a ledger write to commit together
with another write pass their open session in.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, case, or_

from creditgate.core.clock import add_months, as_utc, utc_now
from creditgate.core.database import get_db_session, matches_previous, users, subscriptions
from creditgate.core.errors import InsufficientCreditsError, InternalError, NotFoundError, ValidationError
from creditgate.features.plans.service import (
    get_default_plan,
    get_plan,
    monthly_limit_for,
    require_plan,
)
from creditgate.models.plan import Plan
from creditgate.models.user import CreditBalance

logger = logging.getLogger("creditgate.ledger")

DEFAULT_MAX_CAS_ATTEMPTS = 3


class CreditLedger:
    def __init__(self, session_scope=get_db_session, clock=utc_now, max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS):
        self._session_scope = session_scope
        self._clock = clock
        self.max_cas_attempts = max(1, max_cas_attempts)

    @contextmanager
    def _scope(self, session=None):
        if session is not None:
            yield session
            return
        with self._session_scope() as own:
            yield own

    def _read_account(self, session, user_id: str):
        return session.execute(
            select(
                users.c.credits,
                users.c.monthly_credit_limit,
                users.c.credits_reset_at,
                users.c.credit_plan_slug,
            ).where(users.c.id == user_id)
        ).first()

    def _balance(self, session, user_id: str, reset_applied: bool = False) -> CreditBalance:
        row = self._read_account(session, user_id)
        if row is None:
            raise NotFoundError("User not found")
        return CreditBalance(
            credits=row.credits,
            monthly_limit=row.monthly_credit_limit,
            reset_at=as_utc(row.credits_reset_at),
            plan_slug=row.credit_plan_slug,
            reset_applied=reset_applied,
        )

    def _effective_plan(self, session, user_id: str, plan_slug: Optional[str]) -> Plan:
        if plan_slug:
            return require_plan(plan_slug)
        sub = session.execute(
            select(subscriptions.c.plan_slug, subscriptions.c.status).where(
                subscriptions.c.user_id == user_id
            )
        ).first()
        if sub and sub.status == "active":
            return get_plan(sub.plan_slug) or get_default_plan()
        return get_default_plan()

    def get_balance(self, user_id: str, *, session=None) -> CreditBalance:
        with self._scope(session) as s:
            return self._balance(s, user_id)

    def deduct(self, user_id: str, amount: int = 1, *, session=None) -> int:
        """
        Atomically remove `amount` credits.

        Returns:
            Remaining balance

        Raises:
            ValidationError: amount is not positive
            NotFoundError: unknown user
            InsufficientCreditsError: balance below amount (nothing is changed)
            InternalError: conflict persisted after every retry
        """
        if amount <= 0:
            raise ValidationError("Deduction amount must be positive")

        for attempt in range(self.max_cas_attempts):
            with self._scope(session) as s:
                result = s.execute(
                    update(users)
                    .where(users.c.id == user_id, users.c.credits >= amount)
                    .values(credits=users.c.credits - amount)
                )
                if result.rowcount == 1:
                    remaining = s.execute(
                        select(users.c.credits).where(users.c.id == user_id)
                    ).scalar_one()
                    logger.info("ledger.deduct", extra={"user_id": user_id, "amount": amount, "remaining": remaining})
                    return remaining
                current = s.execute(
                    select(users.c.credits).where(users.c.id == user_id)
                ).scalar_one_or_none()

            if current is None:
                raise NotFoundError("User not found")
            if current < amount:
                logger.info("ledger.insufficient", extra={"user_id": user_id, "amount": amount, "credits": current})
                raise InsufficientCreditsError("Insufficient credits")
            logger.warning("ledger.deduct_conflict", extra={"user_id": user_id, "attempt": attempt + 1})

        raise InternalError("Could not deduct credits due to concurrent updates")

    def sync(self, user_id: str, plan_slug: Optional[str] = None, *, session=None) -> CreditBalance:
        """
        Bring the account in line with the effective plan.

        Resets credits to the monthly allotment when the reset date is unset or
        has passed (exactly once per period, keyed on the previous reset date).
        Otherwise, if the plan changed since the allotment was computed, moves
        the limit to the new plan and clamps credits down to it.
        """
        now = self._clock()
        for attempt in range(self.max_cas_attempts):
            with self._scope(session) as s:
                row = self._read_account(s, user_id)
                if row is None:
                    raise NotFoundError("User not found")

                plan = self._effective_plan(s, user_id, plan_slug)
                limit = monthly_limit_for(plan)
                reset_at = as_utc(row.credits_reset_at)

                if reset_at is None or reset_at <= now:
                    next_reset = add_months(now, 1)
                    result = s.execute(
                        update(users)
                        .where(users.c.id == user_id, matches_previous(users.c.credits_reset_at, row.credits_reset_at))
                        .values(
                            credits=limit,
                            monthly_credit_limit=limit,
                            credits_reset_at=next_reset,
                            credit_plan_slug=plan.slug,
                        )
                    )
                    if result.rowcount == 1:
                        logger.info(
                            "ledger.reset",
                            extra={"user_id": user_id, "plan": plan.slug, "credits": limit, "reset_at": next_reset.isoformat()},
                        )
                        return CreditBalance(
                            credits=limit,
                            monthly_limit=limit,
                            reset_at=next_reset,
                            plan_slug=plan.slug,
                            reset_applied=True,
                        )
                    # Another request performed this period's reset first.
                    return self._balance(s, user_id)

                if plan.slug == row.credit_plan_slug:
                    return self._balance(s, user_id)

                result = s.execute(
                    update(users)
                    .where(users.c.id == user_id, matches_previous(users.c.credit_plan_slug, row.credit_plan_slug))
                    .values(
                        monthly_credit_limit=limit,
                        credits=case((users.c.credits > limit, limit), else_=users.c.credits),
                        credit_plan_slug=plan.slug,
                    )
                )
                if result.rowcount == 1:
                    logger.info(
                        "ledger.plan_changed",
                        extra={"user_id": user_id, "from_plan": row.credit_plan_slug, "to_plan": plan.slug, "limit": limit},
                    )
                    return self._balance(s, user_id)
            logger.warning("ledger.sync_conflict", extra={"user_id": user_id, "attempt": attempt + 1})

        raise InternalError("Could not sync credits due to concurrent updates")

    def grant_additive(self, user_id: str, amount: int, new_reset_at: datetime, plan_slug: str, *, session=None) -> CreditBalance:
        """Add `amount` to both balance and limit (activation / upgrade)."""
        if amount < 0:
            raise ValidationError("Grant amount must not be negative")
        with self._scope(session) as s:
            result = s.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(
                    credits=users.c.credits + amount,
                    monthly_credit_limit=users.c.monthly_credit_limit + amount,
                    credits_reset_at=new_reset_at,
                    credit_plan_slug=plan_slug,
                )
            )
            if result.rowcount != 1:
                raise NotFoundError("User not found")
            balance = self._balance(s, user_id)
        logger.info(
            "ledger.grant",
            extra={"user_id": user_id, "amount": amount, "plan": plan_slug, "credits": balance.credits},
        )
        return balance

    def reset_to_plan(
        self,
        user_id: str,
        plan_slug: str,
        new_reset_at: datetime,
        *,
        session=None,
        if_reset_at_or_before: Optional[datetime] = None,
    ) -> CreditBalance:
        """
        Replace balance and limit with the plan allotment (renewal, no carry-over).

        With `if_reset_at_or_before`, the reset only happens while the stored
        reset date is unset or not after that bound; otherwise this period's
        allotment was already granted and the balance is returned unchanged.
        """
        plan = require_plan(plan_slug)
        limit = monthly_limit_for(plan)
        with self._scope(session) as s:
            stmt = update(users).where(users.c.id == user_id)
            if if_reset_at_or_before is not None:
                stmt = stmt.where(
                    or_(
                        users.c.credits_reset_at.is_(None),
                        users.c.credits_reset_at <= if_reset_at_or_before,
                    )
                )
            result = s.execute(
                stmt.values(
                    credits=limit,
                    monthly_credit_limit=limit,
                    credits_reset_at=new_reset_at,
                    credit_plan_slug=plan.slug,
                )
            )
            if result.rowcount != 1:
                balance = self._balance(s, user_id)
                logger.info(
                    "ledger.renewal_reset_skipped",
                    extra={"user_id": user_id, "plan": plan.slug, "reset_at": balance.reset_at.isoformat()},
                )
                return balance
        logger.info(
            "ledger.renewal_reset",
            extra={"user_id": user_id, "plan": plan.slug, "credits": limit, "reset_at": new_reset_at.isoformat()},
        )
        return CreditBalance(credits=limit, monthly_limit=limit, reset_at=new_reset_at, plan_slug=plan.slug, reset_applied=True)
