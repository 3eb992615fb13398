"""
dealclub/models/redemption.py

Redemption request: pending until the merchant approves or rejects it.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Redemption(BaseModel):
    """
    Redemption of one deal by one user.

    Constraint: at most one PENDING row per (deal_id, subscriber_id).
    Once decided the row is never modified again.
    """
    model_config = ConfigDict(frozen=True)

    redemption_id: str
    deal_id: str
    subscriber_id: str
    status: RedemptionStatus = RedemptionStatus.PENDING
    redemption_code: str
    requested_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def is_decided(self) -> bool:
        return self.status != RedemptionStatus.PENDING


class DecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decision: Decision
    reason: Optional[str] = Field(None, max_length=500)
