"""
creditgate/models/plan.py

Plan model. Plans are code-defined and immutable.
"""

from typing import Literal, Union
from pydantic import BaseModel, ConfigDict

UNLIMITED = "unlimited"


class Plan(BaseModel):
    """
    A purchasable tier with a monthly credit allotment.

    `monthly_credits` is either a non-negative integer or the "unlimited"
    sentinel, which the ledger stores as a large finite number.
    """
    model_config = ConfigDict(frozen=True)

    slug: str
    name: str
    monthly_credits: Union[int, Literal["unlimited"]]
    price: int = 0
    currency: str = "INR"
    currency_symbol: str = "₹"
    is_free: bool = False
