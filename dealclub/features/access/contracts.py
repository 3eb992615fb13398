"""Result types returned by the access gate and the core workflows."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dealclub.models.plan import Plan


class DenialReason(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INACTIVE_SUBSCRIBER = "inactive_subscriber"
    PLAN_EXPIRED = "plan_expired"
    LIMIT_REACHED = "limit_reached"
    DUPLICATE_PENDING_REQUEST = "duplicate_pending_request"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION_ERROR = "validation_error"
    DEAL_UNAVAILABLE = "deal_unavailable"


class AdmissionAction(str, Enum):
    POST_DEAL = "post_deal"
    REDEEM_DEAL = "redeem_deal"


@dataclass(frozen=True)
class PlanSuggestion:
    key: str
    name: str
    priority: int
    limit: Union[int, str, None]

    @classmethod
    def from_plan(cls, plan: Plan, limit: Optional[int]) -> "PlanSuggestion":
        return cls(
            key=plan.key,
            name=plan.name,
            priority=plan.priority,
            limit="unlimited" if limit == -1 else limit,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "name": self.name, "priority": self.priority, "limit": self.limit}


@dataclass(frozen=True)
class Admission:
    subscriber_id: str
    limit: int
    used: int
    period: str
    allowed: bool = True


@dataclass(frozen=True)
class Denial:
    reason: DenialReason
    message: str
    subscriber_id: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    period: Optional[str] = None
    upgrade_suggestions: List[PlanSuggestion] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    allowed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"reason": self.reason.value}
        if self.limit is not None:
            payload["limit"] = self.limit
        if self.used is not None:
            payload["used"] = self.used
        if self.period is not None:
            payload["period"] = self.period
        if self.upgrade_suggestions:
            payload["upgrade_suggestions"] = [s.to_dict() for s in self.upgrade_suggestions]
        payload.update(self.details)
        return payload
