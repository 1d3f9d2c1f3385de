"""
Billing API routes.

Surface:
- GET|POST /api/billing/usage-check: quota gate
- POST /api/billing/track-usage: non-fatal usage bookkeeping
- GET  /api/billing/usage-summary, /available-minutes, /subscription-info
- POST /api/billing/upgrade-plan, /sync-plan, /sync-user
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from interview_billing.core.auth import authenticated_user_id, get_current_claims
from interview_billing.core.clerk_auth import current_plan_claims
from interview_billing.core.errors import AppError, ValidationError
from interview_billing.features.credits.service import get_credit_balance
from interview_billing.features.plans.service import get_plan, normalize_plan_key, plan_key_from_claims
from interview_billing.features.subscriptions.service import get_subscription, sync_plan_from_claims, transition
from interview_billing.features.usage.service import (
    check_usage,
    get_available_minutes,
    get_usage_summary,
    parse_usage_type,
    track_usage_safely,
)
from interview_billing.features.users.service import profile_from_payload, reconcile
from interview_billing.models.identity import MinimalProfile
from interview_billing.models.plan import Plan
from interview_billing.models.subscription import Subscription
from interview_billing.models.usage import AvailableMinutes, UsageCheckResult, UsageSummaryItem

router = APIRouter(prefix="/api/billing", tags=["billing"])


class UsageRequest(BaseModel):
    usage_type: str
    amount: int = Field(1, ge=1)


class TrackUsageResponse(BaseModel):
    tracked: bool
    warning: Optional[str] = None


class UsageSummaryResponse(BaseModel):
    plan_key: str
    usage: List[UsageSummaryItem]


class SubscriptionInfoResponse(BaseModel):
    plan: Plan
    subscription: Optional[Subscription] = None
    topup_balance: int
    lifetime_purchased: int
    lifetime_consumed: int


class UpgradePlanRequest(BaseModel):
    plan_key: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SyncPlanResponse(BaseModel):
    subscription: Subscription
    changed: bool


class SyncUserResponse(BaseModel):
    user_id: str
    external_id: str


@router.get("/usage-check", response_model=UsageCheckResult)
def usage_check_query(
    usage_type: str = Query(...),
    amount: int = Query(1, ge=1),
    user_id: str = Depends(authenticated_user_id),
):
    return check_usage(user_id, usage_type, amount)


@router.post("/usage-check", response_model=UsageCheckResult)
def usage_check(request: UsageRequest, user_id: str = Depends(authenticated_user_id)):
    return check_usage(user_id, request.usage_type, request.amount)


@router.post("/track-usage", response_model=TrackUsageResponse)
def track_usage_route(request: UsageRequest, user_id: str = Depends(authenticated_user_id)):
    """
    Record usage after the gated action already happened.

    Input errors are rejected; storage failures come back as a warning so
    the caller's completed action is never undone.
    """
    usage_type = parse_usage_type(request.usage_type)
    if track_usage_safely(user_id, usage_type, request.amount):
        return TrackUsageResponse(tracked=True)
    return TrackUsageResponse(tracked=False, warning="Usage could not be recorded; the action was not affected")


@router.get("/usage-summary", response_model=UsageSummaryResponse)
def usage_summary(user_id: str = Depends(authenticated_user_id)):
    subscription = get_subscription(user_id)
    plan = get_plan(subscription.plan_key if subscription else None)
    return UsageSummaryResponse(plan_key=plan.key.value, usage=get_usage_summary(user_id))


@router.get("/available-minutes", response_model=AvailableMinutes)
def available_minutes(user_id: str = Depends(authenticated_user_id)):
    return get_available_minutes(user_id)


@router.get("/subscription-info", response_model=SubscriptionInfoResponse)
def subscription_info(user_id: str = Depends(authenticated_user_id)):
    subscription = get_subscription(user_id)
    credit = get_credit_balance(user_id)
    return SubscriptionInfoResponse(
        plan=get_plan(subscription.plan_key if subscription else None),
        subscription=subscription,
        topup_balance=credit.balance,
        lifetime_purchased=credit.lifetime_purchased,
        lifetime_consumed=credit.lifetime_consumed,
    )


@router.post("/upgrade-plan", response_model=Subscription)
def upgrade_plan(
    request: UpgradePlanRequest,
    claims: Dict[str, Any] = Depends(get_current_claims),
):
    """
    Apply a plan change requested by the client.

    Moving above the plan held in the caller's claims is refused; paid
    upgrades arrive through the identity provider first.
    """
    target = normalize_plan_key(request.plan_key)
    if target is None:
        raise ValidationError(f"Unknown plan: {request.plan_key}")
    entitled = plan_key_from_claims(current_plan_claims(claims))
    if target.rank > entitled.rank:
        raise AppError(
            f"Plan {target.value} is not active for this account",
            code="plan_not_entitled",
            status_code=403,
        )
    return transition(claims["sub"], target, request.period_start, request.period_end)


@router.post("/sync-plan", response_model=SyncPlanResponse)
def sync_plan(claims: Dict[str, Any] = Depends(get_current_claims)):
    subscription, changed = sync_plan_from_claims(claims["sub"], claims)
    return SyncPlanResponse(subscription=subscription, changed=changed)


@router.post("/sync-user", response_model=SyncUserResponse)
def sync_user(
    payload: Optional[Dict[str, Any]] = Body(None),
    claims: Dict[str, Any] = Depends(get_current_claims),
):
    """Reconcile the caller from a client user object, or from token claims alone."""
    external_id = claims["sub"]
    if payload:
        profile = profile_from_payload(payload)
        if profile.external_id != external_id:
            raise ValidationError("User payload does not belong to the caller")
    else:
        profile = MinimalProfile(external_id=external_id, email=claims.get("email"))
    return SyncUserResponse(user_id=reconcile(profile), external_id=external_id)
