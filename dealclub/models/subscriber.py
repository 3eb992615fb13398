"""
dealclub/models/subscriber.py

Subscriber model: a user (redeems deals) or a business (posts deals).
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from dealclub.models.plan import PlanType


class SubscriberKind(str, Enum):
    USER = "user"
    BUSINESS = "business"

    @property
    def plan_type(self) -> PlanType:
        return PlanType.USER if self is SubscriberKind.USER else PlanType.MERCHANT


class SubscriberStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class Subscriber(BaseModel):
    """
    Subscriber holds the plan assignment and admin overrides.

    custom_limit:
    - None: no override, use the plan limit
    - -1: unlimited override
    - n >= 0: explicit monthly limit

    owner_user_id is set for businesses only (the merchant user who manages it).
    """
    model_config = ConfigDict(frozen=True)

    subscriber_id: str
    kind: SubscriberKind
    plan_key: Optional[str] = None
    plan_expiry: Optional[datetime] = None
    custom_limit: Optional[int] = None
    status: SubscriberStatus = SubscriberStatus.PENDING
    display_name: Optional[str] = None
    owner_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
