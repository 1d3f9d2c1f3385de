"""Plan catalog and coupon routes."""
from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from interview_billing.core.auth import authenticated_user_id
from interview_billing.features.credits.service import redeem_coupon
from interview_billing.features.plans.service import all_plans
from interview_billing.models.credit import RedemptionFailure, RedemptionResult
from interview_billing.models.plan import Plan

router = APIRouter(prefix="/api", tags=["plans"])


class RedeemRequest(BaseModel):
    code: str


@router.get("/plans", response_model=List[Plan])
def list_plans():
    return all_plans()


@router.post("/coupons/redeem", response_model=RedemptionResult)
def redeem(request: RedeemRequest, user_id: str = Depends(authenticated_user_id)):
    """Failed redemptions keep the result body: 409 when already redeemed, else 400."""
    result = redeem_coupon(user_id, request.code)
    if result.success:
        return result
    status = 409 if result.reason == RedemptionFailure.ALREADY_REDEEMED else 400
    return JSONResponse(status_code=status, content=result.model_dump(mode="json"))
