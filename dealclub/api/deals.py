"""
Deal API routes.

- POST   /v1/deals: Create a deal for the caller's business (posting quota enforced)
- PATCH  /v1/deals/{deal_id}: Edit a deal (status unchanged)
- DELETE /v1/deals/{deal_id}: Soft delete a deal
- GET    /v1/deals: Deals visible to the caller's plan
- GET    /v1/merchant/dashboard: Posting quota and deal stats
"""
from typing import Annotated, Any, Dict

from fastapi import APIRouter, Body, Depends, Query

from dealclub.api.dependencies import get_repo, require_user_id, unwrap
from dealclub.core.errors import PermissionError
from dealclub.features.deals.service import (
    delete_deal,
    list_visible_deals,
    merchant_dashboard,
    request_deal_creation,
    update_deal,
)
from dealclub.features.subscribers.service import get_business_for_owner

router = APIRouter(tags=["deals"])


@router.post("/v1/deals", status_code=201)
def create_deal_endpoint(
    user_id: Annotated[str, Depends(require_user_id)],
    payload: Annotated[Dict[str, Any], Body()],
    repo=Depends(get_repo),
):
    business = get_business_for_owner(user_id, repo=repo)
    if business is None:
        raise PermissionError("No business registered for this merchant")
    deal = unwrap(request_deal_creation(business.subscriber_id, payload, repo=repo))
    return {"data": deal.model_dump(mode="json")}


@router.patch("/v1/deals/{deal_id}")
def update_deal_endpoint(
    deal_id: str,
    user_id: Annotated[str, Depends(require_user_id)],
    payload: Annotated[Dict[str, Any], Body()],
    repo=Depends(get_repo),
):
    deal = unwrap(update_deal(user_id, deal_id, payload, repo=repo))
    return {"data": deal.model_dump(mode="json")}


@router.delete("/v1/deals/{deal_id}")
def delete_deal_endpoint(
    deal_id: str,
    user_id: Annotated[str, Depends(require_user_id)],
    repo=Depends(get_repo),
):
    deal = unwrap(delete_deal(user_id, deal_id, repo=repo))
    return {"data": {"deal_id": deal.deal_id, "deleted": True}}


@router.get("/v1/deals")
def list_deals_endpoint(
    user_id: Annotated[str, Depends(require_user_id)],
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    repo=Depends(get_repo),
):
    deals = unwrap(list_visible_deals(user_id, limit=limit, offset=offset, repo=repo))
    return {"data": [d.model_dump(mode="json") for d in deals], "count": len(deals)}


@router.get("/v1/merchant/dashboard")
def merchant_dashboard_endpoint(
    user_id: Annotated[str, Depends(require_user_id)],
    repo=Depends(get_repo),
):
    return {"data": unwrap(merchant_dashboard(user_id, repo=repo))}
