"""
dealclub/features/redemptions/service.py

Redemption workflow.

States: pending -> approved | rejected. Decided redemptions never change.

Request (user):
    user row locked -> access gate on the redemption quota -> one pending
    request per (deal, user) -> deal must be open -> total-approval cap ->
    plan priority must meet the deal's requirement -> insert pending row

Decide (merchant):
    deal row locked -> ownership via the deal's business -> redemption must
    be pending -> reject stores a reason; approve re-checks the deal and the
    user's quota under the user row lock, writes the approval and expires the
    deal when its member limit is reached, all in one transaction

Notifications go out after commit; their failures never affect the outcome.
"""

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import List, Optional, Union
from uuid import uuid4

from dealclub.core.config import settings
from dealclub.core.errors import DuplicatePendingRequestError
from dealclub.core.repository import get_repository
from dealclub.features.access.contracts import AdmissionAction, Denial, DenialReason, PlanSuggestion
from dealclub.features.access.service import admit, can_access_deal
from dealclub.features.deals.service import owned_deal
from dealclub.features.entitlements import service as entitlements
from dealclub.features.notifications.service import (
    DEAL_EXPIRED,
    REDEMPTION_APPROVED,
    REDEMPTION_REJECTED,
    REDEMPTION_REQUESTED,
    emit_notification,
)
from dealclub.features.plans.service import resolve_plan, upgrade_suggestions
from dealclub.features.usage.service import (
    count_deal_approvals,
    count_distinct_redeemers,
    is_approved_redeemer,
    member_limit_reached,
)
from dealclub.models.deal import Deal, DealStatus, can_transition
from dealclub.models.plan import PlanType
from dealclub.models.redemption import Decision, Redemption, RedemptionStatus

logger = logging.getLogger("dealclub")

RedemptionResult = Union[Redemption, Denial]

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_redemption_code(now: datetime) -> str:
    """RDM + epoch milliseconds + 5 random characters."""
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"RDM{int(now.timestamp() * 1000)}{suffix}"


def _duplicate_denial(user_id: str, deal_id: str, existing: Optional[Redemption] = None) -> Denial:
    details = {"deal_id": deal_id}
    if existing is not None:
        details["redemption_id"] = existing.redemption_id
    return Denial(
        reason=DenialReason.DUPLICATE_PENDING_REQUEST,
        message="You already have a pending request for this deal",
        subscriber_id=user_id,
        details=details,
    )


def deal_availability(uow, deal: Deal, now: datetime, user_id: Optional[str] = None) -> Optional[Denial]:
    """
    None if the deal can take another approved redemption from `user_id`.

    A full member limit still admits users who are already approved redeemers,
    since they do not add a member.
    """
    if deal.is_deleted:
        message = "Deal is no longer available"
    elif deal.status != DealStatus.ACTIVE:
        message = f"Deal is not active ({deal.status.value})"
    elif deal.window_elapsed(now):
        message = "Deal validity period has ended"
    elif deal.max_redemptions is not None and not entitlements.within_limit(
        deal.max_redemptions, count_deal_approvals(uow, deal.deal_id)
    ):
        message = "Deal has reached its redemption limit"
    elif member_limit_reached(uow, deal) and not (
        user_id and is_approved_redeemer(uow, deal.deal_id, user_id)
    ):
        message = "Deal has reached its member limit"
    else:
        return None
    return Denial(
        reason=DenialReason.DEAL_UNAVAILABLE,
        message=message,
        details={"deal_id": deal.deal_id, "deal_status": deal.status.value},
    )


def request_redemption(
    user_id: str,
    deal_id: str,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> RedemptionResult:
    repo = repo or get_repository()
    now = now or _now()

    if not user_id:
        return Denial(reason=DenialReason.UNAUTHORIZED, message="User identity required")

    try:
        with repo.unit_of_work() as uow:
            user = uow.get_subscriber(user_id, lock=True)
            if user is None:
                return Denial(reason=DenialReason.NOT_FOUND, message="User not found", subscriber_id=user_id)

            deal = uow.get_deal(deal_id)
            if deal is None or deal.is_deleted:
                return Denial(
                    reason=DenialReason.NOT_FOUND,
                    message="Deal not found",
                    subscriber_id=user_id,
                    details={"deal_id": deal_id},
                )

            admission = admit(uow, user, AdmissionAction.REDEEM_DEAL, now=now)
            if isinstance(admission, Denial):
                return admission

            existing = uow.find_pending_redemption(deal_id, user_id)
            if existing is not None:
                logger.warning(
                    "[redemption] duplicate pending request",
                    extra={"subscriber_id": user_id, "deal_id": deal_id, "redemption_id": existing.redemption_id},
                )
                return _duplicate_denial(user_id, deal_id, existing)

            unavailable = deal_availability(uow, deal, now, user_id)
            if unavailable is not None:
                return unavailable

            plan = resolve_plan(uow, user.plan_key, PlanType.USER)
            if not can_access_deal(plan, deal):
                suggestions = [
                    PlanSuggestion.from_plan(candidate, candidate.redemption_limit)
                    for candidate in upgrade_suggestions(uow, PlanType.USER, plan.priority if plan else 0)
                    if candidate.priority >= deal.required_priority
                ]
                return Denial(
                    reason=DenialReason.FORBIDDEN,
                    message="Your plan does not include this deal",
                    subscriber_id=user_id,
                    upgrade_suggestions=suggestions,
                    details={"deal_id": deal_id, "required_priority": deal.required_priority},
                )

            redemption = Redemption(
                redemption_id=str(uuid4()),
                deal_id=deal_id,
                subscriber_id=user_id,
                status=RedemptionStatus.PENDING,
                redemption_code=generate_redemption_code(now),
                requested_at=now,
            )
            uow.insert_redemption(redemption)
    except DuplicatePendingRequestError:
        return _duplicate_denial(user_id, deal_id)

    logger.info(
        "[redemption] requested",
        extra={"subscriber_id": user_id, "deal_id": deal_id, "redemption_id": redemption.redemption_id},
    )
    emit_notification(
        REDEMPTION_REQUESTED,
        {
            "redemption_id": redemption.redemption_id,
            "deal_id": deal_id,
            "business_id": deal.business_id,
            "subscriber_id": user_id,
            "redemption_code": redemption.redemption_code,
        },
    )
    return redemption


def _approve(uow, merchant_id: str, redemption: Redemption, deal: Deal, now: datetime):
    """Approve under the deal lock. Returns (redemption, deal_expired) or a Denial."""
    unavailable = deal_availability(uow, deal, now, redemption.subscriber_id)
    if unavailable is not None:
        return unavailable

    user = uow.get_subscriber(redemption.subscriber_id, lock=True)
    if user is None:
        return Denial(
            reason=DenialReason.NOT_FOUND,
            message="User not found",
            subscriber_id=redemption.subscriber_id,
        )
    admission = admit(uow, user, AdmissionAction.REDEEM_DEAL, now=now)
    if isinstance(admission, Denial):
        return admission

    uow.update_redemption(
        redemption.redemption_id,
        status=RedemptionStatus.APPROVED,
        decided_at=now,
        decided_by=merchant_id,
    )
    approved = redemption.model_copy(
        update={"status": RedemptionStatus.APPROVED, "decided_at": now, "decided_by": merchant_id}
    )

    expired = False
    if member_limit_reached(uow, deal) and can_transition(deal.status, DealStatus.EXPIRED):
        uow.update_deal(deal.deal_id, status=DealStatus.EXPIRED, updated_at=now)
        expired = True
        logger.info(
            "[redemption] member limit reached, deal expired",
            extra={
                "deal_id": deal.deal_id,
                "limit": deal.member_limit,
                "used": count_distinct_redeemers(uow, deal.deal_id),
            },
        )
    return approved, expired


def decide_redemption(
    merchant_id: str,
    redemption_id: str,
    decision: Union[Decision, str],
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    repo=None,
) -> RedemptionResult:
    """
    Approve or reject a pending redemption on behalf of the owning merchant.

    A denied approval leaves the redemption pending. Deciding an already
    decided redemption returns INVALID_TRANSITION and writes nothing.
    """
    repo = repo or get_repository()
    now = now or _now()

    if not merchant_id:
        return Denial(reason=DenialReason.UNAUTHORIZED, message="Merchant identity required")
    try:
        decision = Decision(decision)
    except ValueError:
        return Denial(
            reason=DenialReason.VALIDATION_ERROR,
            message="decision must be 'approve' or 'reject'",
            details={"errors": [{"field": "decision", "message": "invalid value"}]},
        )

    expired = False
    with repo.unit_of_work() as uow:
        redemption = uow.get_redemption(redemption_id)
        if redemption is None:
            return Denial(
                reason=DenialReason.NOT_FOUND,
                message="Redemption not found",
                details={"redemption_id": redemption_id},
            )

        owned = owned_deal(uow, merchant_id, redemption.deal_id, lock=True, include_deleted=True)
        if isinstance(owned, Denial):
            return owned
        business, deal = owned

        # Re-read under the deal lock; a concurrent decision may have landed.
        redemption = uow.get_redemption(redemption_id, lock=True)
        if redemption.is_decided:
            logger.warning(
                "[redemption] already processed",
                extra={"redemption_id": redemption_id, "deal_id": deal.deal_id, "reason": redemption.status.value},
            )
            return Denial(
                reason=DenialReason.INVALID_TRANSITION,
                message="Redemption already processed",
                subscriber_id=redemption.subscriber_id,
                details={"redemption_id": redemption_id, "status": redemption.status.value},
            )

        if decision == Decision.REJECT:
            rejection = (reason or "").strip() or settings.DEFAULT_REJECTION_REASON
            uow.update_redemption(
                redemption_id,
                status=RedemptionStatus.REJECTED,
                decided_at=now,
                decided_by=merchant_id,
                rejection_reason=rejection,
            )
            result = redemption.model_copy(
                update={
                    "status": RedemptionStatus.REJECTED,
                    "decided_at": now,
                    "decided_by": merchant_id,
                    "rejection_reason": rejection,
                }
            )
        else:
            outcome = _approve(uow, merchant_id, redemption, deal, now)
            if isinstance(outcome, Denial):
                return outcome
            result, expired = outcome

    event_type = REDEMPTION_APPROVED if result.status == RedemptionStatus.APPROVED else REDEMPTION_REJECTED
    logger.info(
        "[redemption] %s",
        result.status.value,
        extra={
            "redemption_id": redemption_id,
            "deal_id": deal.deal_id,
            "business_id": business.subscriber_id,
            "subscriber_id": result.subscriber_id,
            "event_type": event_type,
        },
    )
    payload = {
        "redemption_id": redemption_id,
        "deal_id": deal.deal_id,
        "business_id": business.subscriber_id,
        "subscriber_id": result.subscriber_id,
        "redemption_code": result.redemption_code,
    }
    if result.rejection_reason:
        payload["rejection_reason"] = result.rejection_reason
    emit_notification(event_type, payload)
    if expired:
        emit_notification(
            DEAL_EXPIRED,
            {"deal_id": deal.deal_id, "business_id": business.subscriber_id, "reason": "member_limit_reached"},
        )
    return result


def list_user_history(
    user_id: str,
    *,
    status: Optional[RedemptionStatus] = None,
    limit: int = 50,
    offset: int = 0,
    repo=None,
) -> Union[List[Redemption], Denial]:
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        if uow.get_subscriber(user_id) is None:
            return Denial(reason=DenialReason.NOT_FOUND, message="User not found", subscriber_id=user_id)
        return uow.list_redemptions(subscriber_id=user_id, status=status, limit=limit, offset=offset)


def list_deal_redemptions(
    merchant_id: str,
    deal_id: str,
    *,
    status: Optional[RedemptionStatus] = None,
    limit: int = 100,
    offset: int = 0,
    repo=None,
) -> Union[List[Redemption], Denial]:
    """Redemptions on a deal, visible only to the merchant who owns it."""
    repo = repo or get_repository()
    with repo.unit_of_work() as uow:
        owned = owned_deal(uow, merchant_id, deal_id)
        if isinstance(owned, Denial):
            return owned
        return uow.list_redemptions(deal_id=deal_id, status=status, limit=limit, offset=offset)
