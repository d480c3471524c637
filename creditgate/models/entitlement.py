from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class AccessDecision(BaseModel):
    """Whether a user may consume the metered feature right now, and why."""
    model_config = ConfigDict(frozen=True)

    has_access: bool
    is_paid_active: bool
    credits: int
    monthly_limit: int
    subscription_status: str  # none | pending | active | cancelled
    plan_slug: str
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    reset_at: Optional[datetime] = None
