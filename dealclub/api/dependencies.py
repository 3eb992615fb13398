"""Shared route dependencies: caller identity, repository, denial mapping."""

from typing import Annotated, Dict, Optional, Type

from fastapi import Header

from dealclub.core.errors import (
    AppError,
    DealUnavailableError,
    DuplicatePendingRequestError,
    InactiveSubscriberError,
    InvalidTransitionError,
    LimitReachedError,
    NotFoundError,
    PermissionError,
    PlanExpiredError,
    UnauthorizedError,
    ValidationError,
)
from dealclub.core.repository import get_repository
from dealclub.features.access.contracts import Denial, DenialReason

_ERRORS: Dict[DenialReason, Type[AppError]] = {
    DenialReason.UNAUTHORIZED: UnauthorizedError,
    DenialReason.FORBIDDEN: PermissionError,
    DenialReason.NOT_FOUND: NotFoundError,
    DenialReason.INACTIVE_SUBSCRIBER: InactiveSubscriberError,
    DenialReason.PLAN_EXPIRED: PlanExpiredError,
    DenialReason.LIMIT_REACHED: LimitReachedError,
    DenialReason.DUPLICATE_PENDING_REQUEST: DuplicatePendingRequestError,
    DenialReason.INVALID_TRANSITION: InvalidTransitionError,
    DenialReason.VALIDATION_ERROR: ValidationError,
    DenialReason.DEAL_UNAVAILABLE: DealUnavailableError,
}


def get_repo():
    """Repository dependency; tests override it with a bound or in-memory repo."""
    return get_repository()


def require_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> str:
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Missing X-User-Id header")
    return x_user_id.strip()


def denial_to_error(denial: Denial) -> AppError:
    error_cls = _ERRORS.get(denial.reason, AppError)
    return error_cls(denial.message, details=denial.to_dict())


def unwrap(result):
    """Return a successful result or raise the error matching the denial."""
    if isinstance(result, Denial):
        raise denial_to_error(result)
    return result
