"""
dealclub/features/plans/service.py

Plan registry.

Handles:
- Plan seeding (user tiers and merchant tiers)
- Plan resolution by key (active plans only)
- Upgrade suggestions for denied subscribers
- Plan retirement (soft when still referenced, hard otherwise)
- Plan expiry dates from billing cycles
"""

import calendar
import logging
from datetime import datetime, timezone
from typing import List, Optional

from dealclub.core.errors import NotFoundError
from dealclub.core.repository import get_repository
from dealclub.core.config import settings
from dealclub.models.plan import BillingCycle, Plan, PlanType

logger = logging.getLogger("dealclub")


# Default plan catalogue (-1 = unlimited)
DEFAULT_PLANS = {
    "community": {
        "name": "Community Plan",
        "type": PlanType.USER,
        "priority": 1,
        "redemption_limit": 5,
        "billing_cycle": BillingCycle.YEARLY,
        "sort_order": 1,
    },
    "silver": {
        "name": "Silver Plan",
        "type": PlanType.USER,
        "priority": 2,
        "redemption_limit": 15,
        "billing_cycle": BillingCycle.YEARLY,
        "sort_order": 2,
    },
    "gold": {
        "name": "Gold Plan",
        "type": PlanType.USER,
        "priority": 3,
        "redemption_limit": 50,
        "billing_cycle": BillingCycle.YEARLY,
        "sort_order": 3,
    },
    "diamond": {
        "name": "Diamond Plan",
        "type": PlanType.USER,
        "priority": 4,
        "redemption_limit": -1,
        "billing_cycle": BillingCycle.YEARLY,
        "sort_order": 4,
    },
    "basic_business": {
        "name": "Basic Business",
        "type": PlanType.MERCHANT,
        "priority": 1,
        "posting_limit": 2,
        "billing_cycle": BillingCycle.MONTHLY,
        "sort_order": 1,
    },
    "standard_business": {
        "name": "Standard Business",
        "type": PlanType.MERCHANT,
        "priority": 2,
        "posting_limit": 10,
        "billing_cycle": BillingCycle.MONTHLY,
        "sort_order": 2,
    },
    "premium_business": {
        "name": "Premium Business",
        "type": PlanType.MERCHANT,
        "priority": 3,
        "posting_limit": 50,
        "billing_cycle": BillingCycle.MONTHLY,
        "sort_order": 3,
    },
    "enterprise_business": {
        "name": "Enterprise Business",
        "type": PlanType.MERCHANT,
        "priority": 4,
        "posting_limit": -1,
        "billing_cycle": BillingCycle.MONTHLY,
        "sort_order": 4,
    },
}

# Expiry used for plans that never lapse
NO_EXPIRY = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def seed_plans(*, now: Optional[datetime] = None, repo=None) -> int:
    """
    Seed default plans into the database (idempotent).

    Existing keys are left untouched, including admin edits to them.

    Returns:
        Number of plans inserted
    """
    repo = repo or get_repository()
    now = now or _now()
    inserted = 0

    with repo.unit_of_work() as uow:
        for key, config in DEFAULT_PLANS.items():
            if uow.find_plan(key, active_only=False) is not None:
                continue
            uow.insert_plan(Plan(key=key, **config), created_at=now)
            inserted += 1

    if inserted:
        logger.info("[plans] seeded %d plans", inserted, extra={"event_type": "plans.seeded"})
    return inserted


def resolve_plan(uow, key: Optional[str], plan_type: PlanType) -> Optional[Plan]:
    """
    Resolve an active plan of the given type.

    Returns None when the key is missing, unknown, inactive or of the other
    type. Callers treat None as a limit of 0.
    """
    if not key:
        return None
    return uow.find_plan(key, plan_type=plan_type, active_only=True)


def get_plan(key: str, *, include_inactive: bool = False, repo=None) -> Optional[Plan]:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        return uow.find_plan(key, active_only=not include_inactive)


def list_plans(
    plan_type: Optional[PlanType] = None,
    include_inactive: bool = False,
    *,
    repo=None,
) -> List[Plan]:
    """List plans ordered by priority (lowest first)."""
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        return uow.list_plans(plan_type=plan_type, active_only=not include_inactive)


def upgrade_suggestions(uow, plan_type: PlanType, priority: int, limit: Optional[int] = None) -> List[Plan]:
    """Active plans of the same type with strictly higher priority, ascending."""
    if limit is None:
        limit = settings.UPGRADE_SUGGESTION_LIMIT
    if limit <= 0:
        return []
    return uow.list_plans(
        plan_type=plan_type,
        active_only=True,
        min_priority_exclusive=priority,
        limit=limit,
    )


def deactivate_plan(key: str, *, repo=None) -> str:
    """
    Retire a plan.

    Plans still assigned to subscribers are deactivated (kept for history);
    unreferenced plans are deleted.

    Returns:
        "soft" or "hard"

    Raises:
        NotFoundError: If the plan doesn't exist
    """
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        plan = uow.find_plan(key, active_only=False)
        if plan is None:
            raise NotFoundError(f"Plan {key} not found")
        if uow.count_plan_references(key) > 0:
            uow.update_plan_active(key, False)
            mode = "soft"
        else:
            uow.delete_plan(key)
            mode = "hard"

    logger.info("[plans] deactivated", extra={"event_type": "plan.deactivated", "reason": mode})
    return mode


def activate_plan(key: str, *, repo=None) -> Plan:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        plan = uow.find_plan(key, active_only=False)
        if plan is None:
            raise NotFoundError(f"Plan {key} not found")
        uow.update_plan_active(key, True)
    return plan.model_copy(update={"is_active": True})


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def plan_expiry_for(plan: Plan, start: Optional[datetime] = None) -> datetime:
    """Expiry of a plan assigned at `start`, from its billing cycle."""
    months = _CYCLE_MONTHS.get(plan.billing_cycle)
    if months is None:
        return NO_EXPIRY
    return _add_months(start or _now(), months)
