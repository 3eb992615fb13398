"""
Redemption API routes.

- POST /v1/deals/{deal_id}/redemptions: Request a redemption (member quota enforced)
- POST /v1/redemptions/{redemption_id}/decision: Merchant approves or rejects
- GET  /v1/redemptions/history: Caller's redemptions
- GET  /v1/deals/{deal_id}/redemptions: Redemptions on a deal the caller owns
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from dealclub.api.dependencies import get_repo, require_user_id, unwrap
from dealclub.features.redemptions.service import (
    decide_redemption,
    list_deal_redemptions,
    list_user_history,
    request_redemption,
)
from dealclub.models.redemption import DecisionRequest, RedemptionStatus

router = APIRouter(tags=["redemptions"])


@router.post("/v1/deals/{deal_id}/redemptions", status_code=201)
def request_redemption_endpoint(
    deal_id: str,
    user_id: Annotated[str, Depends(require_user_id)],
    repo=Depends(get_repo),
):
    redemption = unwrap(request_redemption(user_id, deal_id, repo=repo))
    return {"data": redemption.model_dump(mode="json")}


@router.post("/v1/redemptions/{redemption_id}/decision")
def decide_redemption_endpoint(
    redemption_id: str,
    request: DecisionRequest,
    user_id: Annotated[str, Depends(require_user_id)],
    repo=Depends(get_repo),
):
    redemption = unwrap(
        decide_redemption(user_id, redemption_id, request.decision, request.reason, repo=repo)
    )
    return {"data": redemption.model_dump(mode="json")}


@router.get("/v1/redemptions/history")
def redemption_history_endpoint(
    user_id: Annotated[str, Depends(require_user_id)],
    status: Optional[RedemptionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    repo=Depends(get_repo),
):
    items = unwrap(list_user_history(user_id, status=status, limit=limit, offset=offset, repo=repo))
    return {"data": [r.model_dump(mode="json") for r in items], "count": len(items)}


@router.get("/v1/deals/{deal_id}/redemptions")
def deal_redemptions_endpoint(
    deal_id: str,
    user_id: Annotated[str, Depends(require_user_id)],
    status: Optional[RedemptionStatus] = Query(None),
    repo=Depends(get_repo),
):
    items = unwrap(list_deal_redemptions(user_id, deal_id, status=status, repo=repo))
    return {"data": [r.model_dump(mode="json") for r in items], "count": len(items)}
