"""Credit balance routes."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from creditgate.api.deps import get_current_user, get_services
from creditgate.core.container import Services
from creditgate.models.user import User

router = APIRouter(prefix="/user", tags=["credits"])


class CreditsResponse(BaseModel):
    credits: int
    monthlyCreditLimit: int


@router.get("/credits", response_model=CreditsResponse)
def get_credits(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    balance = services.entitlements.credits(user.id)
    return CreditsResponse(credits=balance.credits, monthlyCreditLimit=balance.monthly_limit)
