"""Shared FastAPI dependencies."""
from fastapi import Depends, Request

from creditgate.core.auth import Identity, get_current_identity
from creditgate.core.container import Services
from creditgate.models.user import User


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> User:
    """Resolve (and lazily create) the user behind the authenticated identity."""
    return services.users.ensure_user(identity.external_id, identity.email)
