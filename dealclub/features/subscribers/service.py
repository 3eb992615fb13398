"""
dealclub/features/subscribers/service.py

Subscriber administration.
- register_user / register_business
- get_subscriber / get_business_for_owner
- assign_plan (plan type must match subscriber kind)
- set_custom_limit (admin quota override)
- set_status (approve, reject, suspend)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from dealclub.core.errors import ConflictError, NotFoundError, ValidationError
from dealclub.core.repository import get_repository
from dealclub.features.plans.service import plan_expiry_for
from dealclub.models.subscriber import Subscriber, SubscriberKind, SubscriberStatus

logger = logging.getLogger("dealclub")

DEFAULT_USER_PLAN = "community"
DEFAULT_BUSINESS_PLAN = "basic_business"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _checked_plan(uow, plan_key: str, kind: SubscriberKind):
    plan = uow.find_plan(plan_key, active_only=False)
    if plan is None:
        raise NotFoundError(f"Plan {plan_key} not found")
    if plan.type != kind.plan_type:
        raise ValidationError(
            f"Plan type mismatch: {plan_key} is a {plan.type.value} plan "
            f"and cannot be assigned to a {kind.value}",
            details={"plan_key": plan_key, "plan_type": plan.type.value, "kind": kind.value},
        )
    if not plan.is_active:
        raise ValidationError(f"Plan {plan_key} is not active", details={"plan_key": plan_key})
    return plan


def _register(
    subscriber_id: str,
    kind: SubscriberKind,
    plan_key: Optional[str],
    *,
    owner_user_id: Optional[str],
    display_name: Optional[str],
    status: SubscriberStatus,
    now: Optional[datetime],
    repo,
) -> Subscriber:
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        if uow.get_subscriber(subscriber_id) is not None:
            raise ConflictError(f"Subscriber {subscriber_id} already exists")

        plan_expiry = None
        if plan_key:
            plan = _checked_plan(uow, plan_key, kind)
            plan_expiry = plan_expiry_for(plan, now)

        subscriber = Subscriber(
            subscriber_id=subscriber_id,
            kind=kind,
            plan_key=plan_key,
            plan_expiry=plan_expiry,
            status=status,
            display_name=display_name,
            owner_user_id=owner_user_id,
            created_at=now,
        )
        uow.insert_subscriber(subscriber)

    logger.info(
        "[subscribers] registered",
        extra={"subscriber_id": subscriber_id, "event_type": f"{kind.value}.registered"},
    )
    return subscriber


def register_user(
    user_id: str,
    *,
    plan_key: Optional[str] = DEFAULT_USER_PLAN,
    display_name: Optional[str] = None,
    status: SubscriberStatus = SubscriberStatus.PENDING,
    now: Optional[datetime] = None,
    repo=None,
) -> Subscriber:
    return _register(
        user_id,
        SubscriberKind.USER,
        plan_key,
        owner_user_id=None,
        display_name=display_name,
        status=status,
        now=now,
        repo=repo,
    )


def register_business(
    business_id: str,
    owner_user_id: str,
    *,
    plan_key: Optional[str] = DEFAULT_BUSINESS_PLAN,
    display_name: Optional[str] = None,
    status: SubscriberStatus = SubscriberStatus.PENDING,
    now: Optional[datetime] = None,
    repo=None,
) -> Subscriber:
    """Register a business managed by the merchant user `owner_user_id`."""
    return _register(
        business_id,
        SubscriberKind.BUSINESS,
        plan_key,
        owner_user_id=owner_user_id,
        display_name=display_name,
        status=status,
        now=now,
        repo=repo,
    )


def get_subscriber(subscriber_id: str, *, repo=None) -> Optional[Subscriber]:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        return uow.get_subscriber(subscriber_id)


def get_business_for_owner(owner_user_id: str, *, repo=None) -> Optional[Subscriber]:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        return uow.get_business_by_owner(owner_user_id)


def _require(uow, subscriber_id: str) -> Subscriber:
    subscriber = uow.get_subscriber(subscriber_id, lock=True)
    if subscriber is None:
        raise NotFoundError(f"Subscriber {subscriber_id} not found")
    return subscriber


def assign_plan(
    subscriber_id: str,
    plan_key: str,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> Subscriber:
    """
    Assign a plan and restart its expiry from `now`.

    Raises:
        NotFoundError: If the subscriber or plan doesn't exist
        ValidationError: If the plan type doesn't match or the plan is inactive
    """
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        subscriber = _require(uow, subscriber_id)
        plan = _checked_plan(uow, plan_key, subscriber.kind)
        plan_expiry = plan_expiry_for(plan, now)
        uow.update_subscriber(subscriber_id, plan_key=plan_key, plan_expiry=plan_expiry)

    logger.info(
        "[subscribers] plan assigned",
        extra={"subscriber_id": subscriber_id, "event_type": "plan.assigned", "reason": plan_key},
    )
    return subscriber.model_copy(update={"plan_key": plan_key, "plan_expiry": plan_expiry})


def set_custom_limit(subscriber_id: str, limit: Optional[int], *, repo=None) -> Subscriber:
    """
    Set or clear the admin quota override.

    None restores the plan limit, -1 is unlimited, 0 blocks entirely.
    """
    if limit is not None and limit < -1:
        raise ValidationError("custom_limit must be -1 (unlimited), 0 or a positive integer")

    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        subscriber = _require(uow, subscriber_id)
        uow.update_subscriber(subscriber_id, custom_limit=limit)

    logger.info(
        "[subscribers] custom limit set",
        extra={"subscriber_id": subscriber_id, "event_type": "custom_limit.set", "limit": limit},
    )
    return subscriber.model_copy(update={"custom_limit": limit})


def set_status(subscriber_id: str, status: SubscriberStatus, *, repo=None) -> Subscriber:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        subscriber = _require(uow, subscriber_id)
        uow.update_subscriber(subscriber_id, status=status)

    logger.info(
        "[subscribers] status changed",
        extra={"subscriber_id": subscriber_id, "event_type": "status.changed", "reason": status.value},
    )
    return subscriber.model_copy(update={"status": status})


def set_plan_expiry(subscriber_id: str, plan_expiry: Optional[datetime], *, repo=None) -> Subscriber:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        subscriber = _require(uow, subscriber_id)
        uow.update_subscriber(subscriber_id, plan_expiry=plan_expiry)
    return subscriber.model_copy(update={"plan_expiry": plan_expiry})
