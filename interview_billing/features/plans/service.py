"""
interview_billing/features/plans/service.py

Plan catalog.

Handles:
- Static plan definitions (deployment-time configuration)
- Limit lookup per usage type
- Highest-ranked plan resolution from identity-provider flags

Pure lookups, no I/O. Unknown plan keys fail closed to the free tier.
"""

from typing import Dict, Iterable, List, Optional, Union

from interview_billing.models.plan import UNLIMITED, Limits, Plan, PlanKey
from interview_billing.models.usage import UsageType

DEFAULT_PLAN_KEY = PlanKey.FREE_USER

PLAN_ALIASES = {
    "free": PlanKey.FREE_USER,
}

PLANS: Dict[PlanKey, Plan] = {
    PlanKey.FREE_USER: Plan(
        key=PlanKey.FREE_USER,
        name="Free",
        price=0,
        limits=Limits(
            minutes_per_month=2,
            interviews_per_day=1,
            analyses_per_month=1,
            video_reviews_per_month=0,
        ),
    ),
    PlanKey.STARTER: Plan(
        key=PlanKey.STARTER,
        name="Starter",
        price=5,
        limits=Limits(
            minutes_per_month=30,
            interviews_per_day=3,
            analyses_per_month=5,
            video_reviews_per_month=2,
        ),
    ),
    PlanKey.PROFESSIONAL: Plan(
        key=PlanKey.PROFESSIONAL,
        name="Professional",
        price=50,
        limits=Limits(
            minutes_per_month=150,
            interviews_per_day=5,
            analyses_per_month=20,
            video_reviews_per_month=10,
        ),
    ),
    PlanKey.PREMIUM: Plan(
        key=PlanKey.PREMIUM,
        name="Premium",
        price=150,
        limits=Limits(
            minutes_per_month=UNLIMITED,
            interviews_per_day=UNLIMITED,
            analyses_per_month=UNLIMITED,
            video_reviews_per_month=UNLIMITED,
        ),
    ),
}

_USAGE_LIMIT_FIELDS = {
    UsageType.MINUTES_PER_MONTH: "minutes_per_month",
    UsageType.INTERVIEWS_PER_DAY: "interviews_per_day",
    UsageType.DETAILED_ANALYSIS_PER_MONTH: "analyses_per_month",
    UsageType.VIDEO_REVIEWS_PER_MONTH: "video_reviews_per_month",
}


def normalize_plan_key(raw: Union[str, PlanKey, None]) -> Optional[PlanKey]:
    """Strict parse of a plan key or alias; unknown values return None."""
    if raw is None:
        return None
    if isinstance(raw, PlanKey):
        return raw
    value = str(raw).strip().lower()
    if value in PLAN_ALIASES:
        return PLAN_ALIASES[value]
    try:
        return PlanKey(value)
    except ValueError:
        return None


def get_plan(plan_key: Union[str, PlanKey, None]) -> Plan:
    """Plan for a key; anything unrecognised resolves to the free tier."""
    key = normalize_plan_key(plan_key)
    return PLANS[key or DEFAULT_PLAN_KEY]


def limits_for(plan_key: Union[str, PlanKey, None]) -> Limits:
    return get_plan(plan_key).limits


def all_plans() -> List[Plan]:
    return sorted(PLANS.values(), key=lambda plan: plan.key.rank)


def limit_for_usage(limits: Limits, usage_type: UsageType) -> int:
    return getattr(limits, _USAGE_LIMIT_FIELDS[UsageType(usage_type)])


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def plan_key_from_claims(flags: Iterable[str]) -> PlanKey:
    """Highest-ranked plan among the caller's flags, else free."""
    best = DEFAULT_PLAN_KEY
    for flag in flags:
        key = normalize_plan_key(flag)
        if key is not None and key.rank > best.rank:
            best = key
    return best
