"""
Entitlement and plan API routes.

- GET /v1/entitlements/me?kind=user|business: Current month quota for the caller
- GET /v1/plans?type=user|merchant: Active plan catalogue
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from dealclub.api.dependencies import get_repo, require_user_id
from dealclub.core.errors import NotFoundError
from dealclub.features.entitlements.service import get_entitlement_summary
from dealclub.features.plans.service import list_plans
from dealclub.features.subscribers.service import get_business_for_owner
from dealclub.models.plan import PlanType
from dealclub.models.subscriber import SubscriberKind

router = APIRouter(tags=["entitlements"])


@router.get("/v1/entitlements/me")
def my_entitlements_endpoint(
    user_id: Annotated[str, Depends(require_user_id)],
    kind: SubscriberKind = Query(SubscriberKind.USER),
    repo=Depends(get_repo),
):
    subscriber_id = user_id
    if kind == SubscriberKind.BUSINESS:
        business = get_business_for_owner(user_id, repo=repo)
        if business is None:
            raise NotFoundError("No business registered for this merchant")
        subscriber_id = business.subscriber_id
    return {"data": get_entitlement_summary(subscriber_id, repo=repo)}


@router.get("/v1/plans")
def list_plans_endpoint(
    type: Optional[PlanType] = Query(None),
    repo=Depends(get_repo),
):
    plans = list_plans(type, repo=repo)
    return {"data": [p.model_dump(mode="json") for p in plans], "count": len(plans)}
