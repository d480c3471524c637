"""
creditgate/features/users/service.py

User directory.

Users are created lazily the first time an authenticated identity is seen,
keyed on the opaque external id supplied by the auth layer.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from creditgate.core.database import get_db_session, users
from creditgate.core.errors import NotFoundError
from creditgate.models.user import User

logger = logging.getLogger("creditgate.users")


def _to_user(row) -> User:
    return User(
        id=row.id,
        external_id=row.external_id,
        email=row.email,
        provider_customer_id=row.provider_customer_id,
    )


class UserService:
    def __init__(self, session_scope=get_db_session):
        self._session_scope = session_scope

    def get_by_external_id(self, external_id: str) -> Optional[User]:
        with self._session_scope() as session:
            row = session.execute(
                select(users).where(users.c.external_id == external_id)
            ).first()
        return _to_user(row) if row else None

    def get(self, user_id: str) -> User:
        with self._session_scope() as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
        if row is None:
            raise NotFoundError("User not found")
        return _to_user(row)

    def ensure_user(self, external_id: str, email: Optional[str] = None) -> User:
        """
        Get or create the user for an external identity.

        Safe under concurrent first requests: the loser of the insert race
        re-reads the winner's row. A changed email is refreshed in place.
        """
        existing = self.get_by_external_id(external_id)
        if existing:
            if email and existing.email != email:
                with self._session_scope() as session:
                    session.execute(
                        update(users).where(users.c.id == existing.id).values(email=email)
                    )
                return existing.model_copy(update={"email": email})
            return existing

        try:
            with self._session_scope() as session:
                user_id = str(uuid.uuid4())
                session.execute(
                    insert(users).values(
                        id=user_id,
                        external_id=external_id,
                        email=email,
                        credits=0,
                        monthly_credit_limit=0,
                    )
                )
            logger.info("user.created", extra={"user_id": user_id})
        except IntegrityError:
            logger.info("user.create_race", extra={"external_id": external_id})

        user = self.get_by_external_id(external_id)
        if user is None:
            raise NotFoundError("User not found")
        return user
