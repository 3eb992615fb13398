"""
dealclub/features/deals/service.py

Deal lifecycle.

Handles:
- Quota-guarded deal creation (business row locked, usage counted and deal
  inserted in one transaction)
- Merchant edits that never change status
- Soft deletion (the row keeps counting against the month it was created in)
- Admin review of deals awaiting approval
- Expiry of deals whose validity window has elapsed
- Listing deals visible to a user's plan
- Merchant dashboard stats
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from dealclub.core.config import settings
from dealclub.core.repository import get_repository
from dealclub.features.access.contracts import AdmissionAction, Denial, DenialReason
from dealclub.features.access.service import admit, check_standing
from dealclub.features.entitlements.service import summarize
from dealclub.features.notifications.service import DEAL_CREATED, DEAL_EXPIRED, emit_notification
from dealclub.features.plans.service import resolve_plan
from dealclub.features.usage.service import member_limit_reached
from dealclub.models.deal import Deal, DealDraft, DealStatus, DealUpdate, can_transition
from dealclub.models.redemption import RedemptionStatus
from dealclub.models.subscriber import Subscriber, SubscriberKind

logger = logging.getLogger("dealclub")

DealResult = Union[Deal, Denial]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _validation_denial(exc: PydanticValidationError, subscriber_id: Optional[str] = None) -> Denial:
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return Denial(
        reason=DenialReason.VALIDATION_ERROR,
        message="Invalid deal data",
        subscriber_id=subscriber_id,
        details={"errors": errors},
    )


def _coerce(model, data, subscriber_id: Optional[str]):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        return _validation_denial(exc, subscriber_id)


def _check_window(valid_until: Optional[datetime], now: datetime, subscriber_id: str) -> Optional[Denial]:
    if valid_until is None:
        return None
    if valid_until.tzinfo is None:
        valid_until = valid_until.replace(tzinfo=timezone.utc)
    if valid_until <= now:
        return Denial(
            reason=DenialReason.VALIDATION_ERROR,
            message="valid_until must be in the future",
            subscriber_id=subscriber_id,
            details={"errors": [{"field": "valid_until", "message": "must be in the future"}]},
        )
    return None


def owned_deal(
    uow,
    owner_user_id: str,
    deal_id: str,
    lock: bool = False,
    include_deleted: bool = False,
) -> Union[Tuple[Subscriber, Deal], Denial]:
    """
    Load a deal and confirm the merchant user owns its business.

    Ownership is derived from the stored business, never from the caller.
    Soft-deleted deals resolve only with include_deleted, so their pending
    redemptions can still be decided.
    """
    deal = uow.get_deal(deal_id, lock=lock)
    if deal is None or (deal.is_deleted and not include_deleted):
        return Denial(
            reason=DenialReason.NOT_FOUND,
            message="Deal not found",
            details={"deal_id": deal_id},
        )
    business = uow.get_subscriber(deal.business_id)
    if business is None or not owner_user_id or business.owner_user_id != owner_user_id:
        logger.warning(
            "[deals] ownership check failed",
            extra={"deal_id": deal_id, "business_id": deal.business_id, "reason": "forbidden"},
        )
        return Denial(
            reason=DenialReason.FORBIDDEN,
            message="You do not manage the business that owns this deal",
            details={"deal_id": deal_id},
        )
    return business, deal


def request_deal_creation(
    business_id: str,
    draft: Union[DealDraft, Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> DealResult:
    """
    Create a deal if the business's monthly posting quota admits one more.

    The business row is locked for the whole check-count-insert sequence so
    concurrent requests for the same business serialize.
    """
    repo = repo or get_repository()
    now = now or _now()

    if not business_id:
        return Denial(reason=DenialReason.UNAUTHORIZED, message="Business identity required")

    draft = _coerce(DealDraft, draft, business_id)
    if isinstance(draft, Denial):
        return draft
    denial = _check_window(draft.valid_until, now, business_id)
    if denial is not None:
        return denial

    with repo.unit_of_work() as uow:
        business = uow.get_subscriber(business_id, lock=True)
        if business is None:
            return Denial(
                reason=DenialReason.NOT_FOUND,
                message="Business not found",
                subscriber_id=business_id,
            )

        admission = admit(uow, business, AdmissionAction.POST_DEAL, now=now)
        if isinstance(admission, Denial):
            return admission

        status = DealStatus.PENDING_APPROVAL if settings.DEALS_REQUIRE_APPROVAL else DealStatus.ACTIVE
        deal = Deal(
            deal_id=str(uuid4()),
            business_id=business_id,
            title=draft.title,
            description=draft.description,
            status=status,
            member_limit=draft.member_limit,
            max_redemptions=draft.max_redemptions,
            required_priority=draft.required_priority,
            valid_until=draft.valid_until,
            created_at=now,
            updated_at=now,
        )
        uow.insert_deal(deal)

    logger.info(
        "[deals] created",
        extra={"business_id": business_id, "deal_id": deal.deal_id, "event_type": DEAL_CREATED},
    )
    emit_notification(
        DEAL_CREATED,
        {"deal_id": deal.deal_id, "business_id": business_id, "title": deal.title, "status": deal.status.value},
    )
    return deal


def update_deal(
    owner_user_id: str,
    deal_id: str,
    changes: Union[DealUpdate, Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> DealResult:
    """Apply a merchant edit. Status, creation time and business never change."""
    repo = repo or get_repository()
    now = now or _now()

    changes = _coerce(DealUpdate, changes, owner_user_id)
    if isinstance(changes, Denial):
        return changes
    fields = changes.model_dump(exclude_unset=True)
    for required in ("title", "required_priority"):
        if required in fields and fields[required] is None:
            del fields[required]
    if "title" in fields:
        fields["title"] = fields["title"].strip()
        if not fields["title"]:
            return Denial(
                reason=DenialReason.VALIDATION_ERROR,
                message="title must not be blank",
                details={"errors": [{"field": "title", "message": "must not be blank"}]},
            )
    denial = _check_window(fields.get("valid_until"), now, owner_user_id)
    if denial is not None:
        return denial

    with repo.unit_of_work() as uow:
        owned = owned_deal(uow, owner_user_id, deal_id, lock=True)
        if isinstance(owned, Denial):
            return owned
        _, deal = owned
        if not fields:
            return deal
        fields["updated_at"] = now
        uow.update_deal(deal_id, **fields)
        updated = uow.get_deal(deal_id)
        # A lowered member limit may already be met by existing redeemers
        expired = member_limit_reached(uow, updated) and can_transition(updated.status, DealStatus.EXPIRED)
        if expired:
            uow.update_deal(deal_id, status=DealStatus.EXPIRED, updated_at=now)
            updated = updated.model_copy(update={"status": DealStatus.EXPIRED})

    logger.info("[deals] updated", extra={"deal_id": deal_id, "event_type": "deal.updated"})
    if expired:
        logger.info(
            "[deals] member limit already met, deal expired",
            extra={"deal_id": deal_id, "business_id": updated.business_id},
        )
        emit_notification(
            DEAL_EXPIRED,
            {"deal_id": deal_id, "business_id": updated.business_id, "reason": "member_limit_reached"},
        )
    return updated


def delete_deal(owner_user_id: str, deal_id: str, *, now: Optional[datetime] = None, repo=None) -> DealResult:
    """Soft delete. The row stays so the posting quota still counts it."""
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        owned = owned_deal(uow, owner_user_id, deal_id, lock=True)
        if isinstance(owned, Denial):
            return owned
        _, deal = owned
        uow.update_deal(deal_id, deleted_at=now, updated_at=now)

    logger.info("[deals] deleted", extra={"deal_id": deal_id, "event_type": "deal.deleted"})
    return deal.model_copy(update={"deleted_at": now, "updated_at": now})


def _transition(uow, deal: Deal, target: DealStatus, now: datetime, **fields) -> Union[Deal, Denial]:
    if not can_transition(deal.status, target):
        return Denial(
            reason=DenialReason.INVALID_TRANSITION,
            message=f"Deal cannot move from {deal.status.value} to {target.value}",
            details={"deal_id": deal.deal_id, "status": deal.status.value},
        )
    uow.update_deal(deal.deal_id, status=target, updated_at=now, **fields)
    return deal.model_copy(update={"status": target, "updated_at": now, **fields})


def deactivate_deal(owner_user_id: str, deal_id: str, *, now: Optional[datetime] = None, repo=None) -> DealResult:
    repo = repo or get_repository()
    now = now or _now()
    with repo.unit_of_work() as uow:
        owned = owned_deal(uow, owner_user_id, deal_id, lock=True)
        if isinstance(owned, Denial):
            return owned
        return _transition(uow, owned[1], DealStatus.INACTIVE, now)


def review_deal(
    deal_id: str,
    approve: bool,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> DealResult:
    """Admin decision on a deal awaiting approval."""
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        deal = uow.get_deal(deal_id, lock=True)
        if deal is None or deal.is_deleted:
            return Denial(reason=DenialReason.NOT_FOUND, message="Deal not found", details={"deal_id": deal_id})
        if approve:
            result = _transition(uow, deal, DealStatus.ACTIVE, now)
        else:
            rejection = (reason or "").strip() or settings.DEFAULT_REJECTION_REASON
            result = _transition(uow, deal, DealStatus.REJECTED, now, rejection_reason=rejection)

    if isinstance(result, Deal):
        logger.info(
            "[deals] reviewed",
            extra={"deal_id": deal_id, "event_type": "deal.reviewed", "reason": result.status.value},
        )
    return result


def expire_elapsed_deals(*, now: Optional[datetime] = None, repo=None) -> List[str]:
    """Mark live deals whose validity window has passed as expired."""
    repo = repo or get_repository()
    now = now or _now()
    expired: List[str] = []

    with repo.unit_of_work() as uow:
        elapsed = uow.list_deals(
            statuses=[DealStatus.ACTIVE, DealStatus.INACTIVE],
            elapsed_at=now,
            limit=None,
        )
        for deal in elapsed:
            uow.update_deal(deal.deal_id, status=DealStatus.EXPIRED, updated_at=now)
            expired.append(deal.deal_id)

    for deal_id in expired:
        emit_notification(DEAL_EXPIRED, {"deal_id": deal_id, "reason": "validity_window_elapsed"})
    return expired


def get_deal(deal_id: str, *, repo=None) -> Optional[Deal]:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        deal = uow.get_deal(deal_id)
    if deal is None or deal.is_deleted:
        return None
    return deal


def list_visible_deals(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
    repo=None,
) -> Union[List[Deal], Denial]:
    """Active, non-deleted, in-window deals whose required priority the user's plan meets."""
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        user = uow.get_subscriber(user_id)
        if user is None:
            return Denial(reason=DenialReason.NOT_FOUND, message="User not found", subscriber_id=user_id)
        if user.kind != SubscriberKind.USER:
            return Denial(
                reason=DenialReason.FORBIDDEN,
                message="Only members can browse deals",
                subscriber_id=user_id,
            )
        denial = check_standing(user, now)
        if denial is not None:
            return denial
        plan = resolve_plan(uow, user.plan_key, user.kind.plan_type)
        priority = plan.priority if plan else 0
        return uow.list_deals(
            statuses=[DealStatus.ACTIVE],
            max_required_priority=priority,
            open_at=now,
            limit=limit,
            offset=offset,
        )


def merchant_dashboard(owner_user_id: str, *, now: Optional[datetime] = None, repo=None) -> Union[Dict[str, Any], Denial]:
    """Posting quota plus deal and redemption counts for the merchant's business."""
    repo = repo or get_repository()
    now = now or _now()

    with repo.unit_of_work() as uow:
        business = uow.get_business_by_owner(owner_user_id)
        if business is None:
            return Denial(
                reason=DenialReason.NOT_FOUND,
                message="No business registered for this merchant",
                subscriber_id=owner_user_id,
            )
        plan = resolve_plan(uow, business.plan_key, business.kind.plan_type)
        quota = summarize(uow, business, plan, now)

        counts = uow.count_deals_by_status(business.subscriber_id)
        by_status: Dict[str, int] = {status.value: counts.get(status, 0) for status in DealStatus}
        deleted = uow.count_deleted_deals(business.subscriber_id)
        pending = uow.count_business_redemptions(business.subscriber_id, RedemptionStatus.PENDING)
        approved = uow.count_business_redemptions(business.subscriber_id, RedemptionStatus.APPROVED)

    return {
        "business_id": business.subscriber_id,
        "plan_key": business.plan_key,
        "posting_quota": quota,
        "deals_by_status": by_status,
        "deleted_deals": deleted,
        "pending_redemptions": pending,
        "approved_redemptions": approved,
    }
