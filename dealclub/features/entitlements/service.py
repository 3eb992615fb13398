"""
dealclub/features/entitlements/service.py

Entitlement resolution.

Precedence for a subscriber's monthly limit:
1. Subscriber custom_limit (admin override, may be 0, n or -1)
2. Plan posting_limit (business) or redemption_limit (user)
3. 0 (deny by default)

-1 is the only "unlimited" value. It is interpreted here and nowhere else:
callers use is_unlimited / within_limit / remaining instead of comparing.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from dealclub.core.config import settings
from dealclub.core.errors import NotFoundError
from dealclub.core.repository import get_repository
from dealclub.features.plans.service import resolve_plan
from dealclub.features.usage import periods
from dealclub.features.usage.service import count_usage
from dealclub.models.plan import Plan
from dealclub.models.subscriber import Subscriber, SubscriberKind

UNLIMITED = -1


def is_unlimited(limit: Optional[int]) -> bool:
    return limit == UNLIMITED


def within_limit(limit: int, used: int, requested: int = 1) -> bool:
    """True if `requested` more units fit under `limit` given `used`."""
    if is_unlimited(limit):
        return True
    return used + requested <= limit


def remaining(limit: int, used: int) -> Union[int, str]:
    if is_unlimited(limit):
        return "unlimited"
    return max(0, limit - used)


def plan_limit(subscriber: Subscriber, plan: Optional[Plan]) -> Optional[int]:
    """The plan's limit for this kind of subscriber, or None if undefined."""
    if plan is None:
        return None
    if subscriber.kind == SubscriberKind.BUSINESS:
        return plan.posting_limit
    return plan.redemption_limit


def override_applied(subscriber: Subscriber) -> bool:
    return subscriber.custom_limit is not None


def effective_limit(subscriber: Subscriber, plan: Optional[Plan]) -> int:
    if override_applied(subscriber):
        return subscriber.custom_limit
    limit = plan_limit(subscriber, plan)
    if limit is None:
        return 0
    return limit


def period_key(now: Optional[datetime] = None, tz: Optional[str] = None) -> str:
    return periods.period_key(now or datetime.now(timezone.utc), tz)


def period_bounds(key: str, tz: Optional[str] = None) -> periods.Period:
    return periods.period_from_key(key, tz)


def current_usage(uow, subscriber: Subscriber, key: str) -> int:
    return count_usage(uow, subscriber, periods.period_from_key(key))


def usage_status(limit: int, used: int) -> str:
    if is_unlimited(limit):
        return "ok"
    if used >= limit:
        return "at_limit"
    if used >= limit * settings.APPROACHING_LIMIT_RATIO:
        return "approaching_limit"
    return "ok"


def summarize(uow, subscriber: Subscriber, plan: Optional[Plan], now: datetime) -> Dict[str, Any]:
    key = periods.period_key(now)
    limit = effective_limit(subscriber, plan)
    used = current_usage(uow, subscriber, key)
    return {
        "subscriber_id": subscriber.subscriber_id,
        "kind": subscriber.kind.value,
        "plan_key": plan.key if plan else None,
        "status": usage_status(limit, used),
        "limit": "unlimited" if is_unlimited(limit) else limit,
        "used": used,
        "remaining": remaining(limit, used),
        "override_applied": override_applied(subscriber),
        "period": key,
    }


def get_entitlement_summary(
    subscriber_id: str,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> Dict[str, Any]:
    """
    Read-only view of a subscriber's quota for the current month.

    Raises:
        NotFoundError: If the subscriber doesn't exist
    """
    repo = repo or get_repository()
    now = now or datetime.now(timezone.utc)
    with repo.unit_of_work() as uow:
        subscriber = uow.get_subscriber(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")
        plan = resolve_plan(uow, subscriber.plan_key, subscriber.kind.plan_type)
        return summarize(uow, subscriber, plan, now)
