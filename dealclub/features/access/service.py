"""
dealclub/features/access/service.py

Access gate: may this subscriber perform one more quota-counted action?

Checks run in order and stop at the first failure:
1. subscriber status must be approved
2. plan_expiry, when set, must not be in the past
3. effective limit vs usage for the current month (-1 always admits)

Denials for an exhausted quota carry up to UPGRADE_SUGGESTION_LIMIT
higher-priority plans of the same type. Suggestions are informational and
never change the decision.

The gate is advisory on its own. Writers call `admit` inside the same unit of
work that performs the insert/update so the count and the write share one
transaction.
"""

import dataclasses
from datetime import datetime, timezone
from typing import Optional, Union

from dealclub.core.errors import NotFoundError
from dealclub.core.logging import log_event
from dealclub.core.repository import get_repository
from dealclub.features.access.contracts import (
    Admission,
    AdmissionAction,
    Denial,
    DenialReason,
    PlanSuggestion,
)
from dealclub.features.entitlements import service as entitlements
from dealclub.features.plans.service import resolve_plan, upgrade_suggestions
from dealclub.features.usage import periods
from dealclub.models.deal import Deal
from dealclub.models.plan import Plan
from dealclub.models.subscriber import Subscriber, SubscriberKind, SubscriberStatus

AdmissionResult = Union[Admission, Denial]

_ACTION_KIND = {
    AdmissionAction.POST_DEAL: SubscriberKind.BUSINESS,
    AdmissionAction.REDEEM_DEAL: SubscriberKind.USER,
}

_STATUS_MESSAGES = {
    SubscriberStatus.PENDING: "Your account is pending approval",
    SubscriberStatus.REJECTED: "Your account has been rejected",
    SubscriberStatus.SUSPENDED: "Your account has been suspended",
}

_LIMIT_MESSAGES = {
    AdmissionAction.POST_DEAL: "Monthly deal posting limit reached",
    AdmissionAction.REDEEM_DEAL: "Monthly redemption limit reached",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_standing(subscriber: Subscriber, now: datetime) -> Optional[Denial]:
    """Status and plan expiry checks (steps 1 and 2). None means in good standing."""
    if subscriber.status != SubscriberStatus.APPROVED:
        return Denial(
            reason=DenialReason.INACTIVE_SUBSCRIBER,
            message=_STATUS_MESSAGES.get(subscriber.status, "Your account is not active"),
            subscriber_id=subscriber.subscriber_id,
            details={"status": subscriber.status.value},
        )
    if subscriber.plan_expiry is not None and subscriber.plan_expiry < now:
        return Denial(
            reason=DenialReason.PLAN_EXPIRED,
            message="Your plan has expired. Please renew to continue",
            subscriber_id=subscriber.subscriber_id,
            details={"plan_expiry": subscriber.plan_expiry.isoformat()},
        )
    return None


def check_admission(
    subscriber: Subscriber,
    plan: Optional[Plan],
    action: AdmissionAction,
    used: int,
    now: datetime,
) -> AdmissionResult:
    """Pure admission decision from already-counted usage."""
    if _ACTION_KIND[action] != subscriber.kind:
        return Denial(
            reason=DenialReason.FORBIDDEN,
            message=f"A {subscriber.kind.value} account cannot {action.value.replace('_', ' ')}",
            subscriber_id=subscriber.subscriber_id,
        )

    denial = check_standing(subscriber, now)
    if denial is not None:
        return denial

    period = periods.period_key(now)
    limit = entitlements.effective_limit(subscriber, plan)
    if entitlements.within_limit(limit, used):
        return Admission(subscriber_id=subscriber.subscriber_id, limit=limit, used=used, period=period)

    return Denial(
        reason=DenialReason.LIMIT_REACHED,
        message=_LIMIT_MESSAGES[action],
        subscriber_id=subscriber.subscriber_id,
        limit=limit,
        used=used,
        period=period,
        details={"plan_key": plan.key if plan else None},
    )


def _suggest(uow, subscriber: Subscriber, plan: Optional[Plan]):
    current_priority = plan.priority if plan else 0
    return [
        PlanSuggestion.from_plan(candidate, entitlements.plan_limit(subscriber, candidate))
        for candidate in upgrade_suggestions(uow, subscriber.kind.plan_type, current_priority)
    ]


def admit(uow, subscriber: Subscriber, action: AdmissionAction, *, now: datetime) -> AdmissionResult:
    """
    Run the gate against live counts inside `uow`.

    The caller is expected to hold the subscriber row lock when the result
    guards a write.
    """
    plan = resolve_plan(uow, subscriber.plan_key, subscriber.kind.plan_type)
    period = periods.period_for(now)

    used = 0
    if _ACTION_KIND[action] == subscriber.kind:
        used = entitlements.current_usage(uow, subscriber, period.key)

    result = check_admission(subscriber, plan, action, used, now)

    if isinstance(result, Denial) and result.reason == DenialReason.LIMIT_REACHED:
        result = dataclasses.replace(result, upgrade_suggestions=_suggest(uow, subscriber, plan))

    admitted = isinstance(result, Admission)
    log_event(
        "info" if admitted else "warning",
        "[access] ADMIT" if admitted else "[access] DENY",
        subscriber_id=subscriber.subscriber_id,
        event_type=action.value,
        reason=None if admitted else result.reason.value,
        limit=result.limit,
        used=result.used,
        period=result.period,
    )
    return result


def preview_admission(
    subscriber_id: str,
    action: AdmissionAction,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> AdmissionResult:
    """Advisory check without a write. The write paths re-check under lock."""
    repo = repo or get_repository()
    now = now or _now()
    with repo.unit_of_work() as uow:
        subscriber = uow.get_subscriber(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")
        return admit(uow, subscriber, action, now=now)


def can_access_deal(plan: Optional[Plan], deal: Deal) -> bool:
    """Users see and redeem deals whose required priority their plan meets."""
    priority = plan.priority if plan else 0
    return priority >= deal.required_priority
