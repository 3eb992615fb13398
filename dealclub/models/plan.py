"""
dealclub/models/plan.py

Plan model: a membership tier for users or a posting tier for merchants.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanType(str, Enum):
    USER = "user"
    MERCHANT = "merchant"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"
    NONE = "none"


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Limits:
    - posting_limit: deals a merchant may create per calendar month
    - redemption_limit: approved redemptions a user may receive per calendar month

    -1 means unlimited; None means the plan does not define the limit
    (which resolves to 0, deny by default).

    Plans do NOT include pricing; billing is handled elsewhere.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    key: str
    name: str
    type: PlanType
    priority: int = 1
    posting_limit: Optional[int] = None
    redemption_limit: Optional[int] = None
    is_active: bool = True
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    sort_order: int = 0
