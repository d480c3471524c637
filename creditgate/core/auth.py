"""
Identity extraction.

Authentication happens upstream; the gateway in front of this service sets
trusted headers with the opaque user id and the user's email. Missing id
means the request never passed the auth layer.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from creditgate.core.errors import AuthenticationError


@dataclass(frozen=True)
class Identity:
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def get_current_identity(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
) -> Identity:
    external_id = (x_user_id or "").strip()
    if not external_id:
        raise AuthenticationError("Unauthorized")
    email = (x_user_email or "").strip() or None
    name = (x_user_name or "").strip() or None
    return Identity(external_id=external_id, email=email, name=name)
