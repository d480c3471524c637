from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_id: str
    email: Optional[str] = None
    provider_customer_id: Optional[str] = None


class CreditBalance(BaseModel):
    """Snapshot of a user's credit account after a ledger operation."""
    model_config = ConfigDict(frozen=True)

    credits: int
    monthly_limit: int
    reset_at: Optional[datetime] = None
    plan_slug: Optional[str] = None
    reset_applied: bool = False
