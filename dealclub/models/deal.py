"""
dealclub/models/deal.py

Deal model and the request payloads merchants submit.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dealclub.core.config import settings


class DealStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    REJECTED = "rejected"


# Status only moves forward; merchant edits never touch it.
DEAL_TRANSITIONS = {
    DealStatus.PENDING_APPROVAL: frozenset({DealStatus.ACTIVE, DealStatus.REJECTED}),
    DealStatus.ACTIVE: frozenset({DealStatus.INACTIVE, DealStatus.EXPIRED}),
    DealStatus.INACTIVE: frozenset({DealStatus.EXPIRED}),
    DealStatus.EXPIRED: frozenset(),
    DealStatus.REJECTED: frozenset(),
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def can_transition(current: DealStatus, target: DealStatus) -> bool:
    return target in DEAL_TRANSITIONS.get(current, frozenset())


class Deal(BaseModel):
    """
    Deal posted by a business.

    member_limit caps the number of distinct users with an approved redemption;
    reaching it expires the deal. max_redemptions caps total approved
    redemptions (-1 or None = no cap). Soft-deleted deals keep their row so
    they still count against the monthly posting quota.
    """
    model_config = ConfigDict(frozen=True)

    deal_id: str
    business_id: str
    title: str
    description: Optional[str] = None
    status: DealStatus = DealStatus.PENDING_APPROVAL
    member_limit: Optional[int] = None
    max_redemptions: Optional[int] = None
    required_priority: int = 1
    valid_until: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def window_elapsed(self, now: datetime) -> bool:
        return self.valid_until is not None and self.valid_until <= now


class DealDraft(BaseModel):
    """Validated merchant input for a new deal."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    member_limit: Optional[int] = Field(None, ge=1)
    max_redemptions: Optional[int] = Field(None, ge=-1)
    required_priority: int = Field(default_factory=lambda: settings.DEFAULT_REQUIRED_PRIORITY, ge=1)
    valid_until: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped

    @field_validator("max_redemptions")
    @classmethod
    def _no_zero_cap(cls, value: Optional[int]) -> Optional[int]:
        if value == 0:
            raise ValueError("max_redemptions must be -1 (unlimited) or positive")
        return value

    @field_validator("valid_until")
    @classmethod
    def _aware_valid_until(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class DealUpdate(BaseModel):
    """Merchant edit. Status is intentionally absent."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    member_limit: Optional[int] = Field(None, ge=1)
    max_redemptions: Optional[int] = Field(None, ge=-1)
    required_priority: Optional[int] = Field(None, ge=1)
    valid_until: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def _aware_valid_until(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)
