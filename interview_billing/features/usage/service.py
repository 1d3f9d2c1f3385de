"""
interview_billing/features/usage/service.py

Usage ledger, quota gate and usage committer.

Handles:
- Billing period resolution (UTC calendar month, UTC day for daily limits)
- Read-only quota checks with allowance/credit coverage
- Atomic counter increments (single-statement upsert)
- Minute draw-down: monthly allowance first, then top-up credit, then overage
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from interview_billing.core.database import as_utc, get_db_session, upsert, usage_records, utcnow
from interview_billing.core.errors import QuotaExceededError, ValidationError
from interview_billing.features.credits.service import consume_credit, read_credit_balance
from interview_billing.features.plans.service import is_unlimited, limit_for_usage, limits_for
from interview_billing.features.subscriptions.service import resolve_plan_key
from interview_billing.features.users.service import ensure_user_row, lookup_internal_id
from interview_billing.models.plan import UNLIMITED
from interview_billing.models.usage import (
    AvailableMinutes,
    Coverage,
    MinuteDraw,
    UsageCheckResult,
    UsageSummaryItem,
    UsageType,
)

logger = logging.getLogger("interview_billing")


def parse_usage_type(value: Union[str, UsageType, None]) -> UsageType:
    if value is None or value == "":
        raise ValidationError("usage_type is required")
    try:
        return UsageType(value)
    except ValueError:
        raise ValidationError(f"Unknown usage type: {value}")


def _validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount must be an integer")
    if amount < 1:
        raise ValidationError("amount must be at least 1")
    return amount


def period_bounds(usage_type: UsageType, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Period containing ``now``: the UTC day for daily limits, else the UTC month."""
    now = as_utc(now) or utcnow()
    if usage_type == UsageType.INTERVIEWS_PER_DAY:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def read_usage_count(session: Session, user_id: Optional[str], usage_type: UsageType, now: Optional[datetime] = None) -> int:
    """Current count for the active period; a missing row reads as zero."""
    if not user_id:
        return 0
    start, _ = period_bounds(usage_type, now)
    count = session.execute(
        select(usage_records.c.count)
        .where(usage_records.c.user_id == user_id)
        .where(usage_records.c.usage_type == usage_type.value)
        .where(usage_records.c.period_start == start)
    ).scalar()
    return count or 0


def increment_usage(session: Session, user_id: str, usage_type: UsageType, amount: int, now: Optional[datetime] = None) -> None:
    """Atomically add ``amount`` to the period counter, creating the row on first use."""
    if amount <= 0:
        return
    start, end = period_bounds(usage_type, now)
    stmt = upsert(session, usage_records).values(
        user_id=user_id,
        usage_type=usage_type.value,
        period_start=start,
        period_end=end,
        count=amount,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "usage_type", "period_start"],
        set_={
            "count": usage_records.c.count + stmt.excluded.count,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)


def evaluate_usage(
    usage_type: UsageType,
    requested: int,
    current: int,
    limit: int,
    topup_balance: int = 0,
) -> UsageCheckResult:
    """Pure quota decision. Top-up credit only ever covers minutes."""
    if is_unlimited(limit):
        return UsageCheckResult(
            allowed=True,
            usage_type=usage_type,
            requested=requested,
            current_usage=current,
            limit_value=UNLIMITED,
            remaining=None,
            is_unlimited=True,
            monthly_allowed=True,
            credit_allowed=False,
            coverage=Coverage.UNLIMITED,
            topup_balance=topup_balance,
            total_available=None,
        )

    remaining = max(0, limit - current)
    monthly_allowed = current + requested <= limit
    balance = topup_balance if usage_type == UsageType.MINUTES_PER_MONTH else 0
    credit_allowed = not monthly_allowed and balance > 0 and requested <= remaining + balance

    if monthly_allowed:
        coverage = Coverage.ALLOWANCE
    elif credit_allowed:
        coverage = Coverage.CREDIT
    else:
        coverage = Coverage.NONE

    return UsageCheckResult(
        allowed=monthly_allowed or credit_allowed,
        usage_type=usage_type,
        requested=requested,
        current_usage=current,
        limit_value=limit,
        remaining=remaining,
        is_unlimited=False,
        monthly_allowed=monthly_allowed,
        credit_allowed=credit_allowed,
        coverage=coverage,
        topup_balance=balance,
        total_available=remaining + balance,
    )


def check_usage_in_session(
    session: Session,
    user_id: Optional[str],
    usage_type: UsageType,
    amount: int,
    now: Optional[datetime] = None,
) -> UsageCheckResult:
    plan_key = resolve_plan_key(session, user_id)
    limit = limit_for_usage(limits_for(plan_key), usage_type)
    current = read_usage_count(session, user_id, usage_type, now)
    balance = 0
    if usage_type == UsageType.MINUTES_PER_MONTH:
        balance = read_credit_balance(session, user_id).balance
    return evaluate_usage(usage_type, amount, current, limit, balance)


def check_usage(
    external_id: str,
    usage_type: Union[str, UsageType],
    amount: int = 1,
    now: Optional[datetime] = None,
) -> UsageCheckResult:
    """
    Quota gate. Never writes: an unknown user or missing row reads as zero
    usage on the free plan.
    """
    kind = parse_usage_type(usage_type)
    amount = _validate_amount(amount)
    with get_db_session() as session:
        user_id = lookup_internal_id(session, external_id)
        result = check_usage_in_session(session, user_id, kind, amount, now)

    if not result.allowed:
        logger.warning(
            "[usage] WOULD_EXCEED",
            extra={
                "external_id": external_id,
                "usage_type": kind.value,
                "current": result.current_usage,
                "limit": result.limit_value,
                "requested": amount,
            },
        )
    elif result.coverage == Coverage.CREDIT:
        logger.info(
            "[usage] covered by credit",
            extra={"external_id": external_id, "requested": amount, "topup_balance": result.topup_balance},
        )
    return result


def raise_quota_exceeded(result: UsageCheckResult) -> None:
    raise QuotaExceededError(
        f"Usage limit reached for {result.usage_type.value}",
        usage_type=result.usage_type.value,
        current=result.current_usage,
        limit=result.limit_value,
        remaining=result.remaining or 0,
    )


def enforce_usage(
    external_id: str,
    usage_type: Union[str, UsageType],
    amount: int = 1,
    now: Optional[datetime] = None,
) -> UsageCheckResult:
    """Gate that raises QuotaExceededError instead of returning allowed=False."""
    result = check_usage(external_id, usage_type, amount, now)
    if not result.allowed:
        raise_quota_exceeded(result)
    return result


def plan_minute_draw(minutes: int, monthly_limit: int, monthly_used: int, credit_balance: int) -> MinuteDraw:
    """
    Split ``minutes`` across allowance, credit and overage.

    monthly_draw + credit_draw + overage == minutes. With an unlimited
    allowance everything lands on the monthly counter.
    """
    if minutes < 0:
        raise ValueError("minutes must be non-negative")
    if is_unlimited(monthly_limit):
        return MinuteDraw(minutes=minutes, monthly_draw=minutes, credit_draw=0, overage=0)
    headroom = max(0, monthly_limit - monthly_used)
    monthly_draw = min(minutes, headroom)
    rest = minutes - monthly_draw
    credit_draw = min(rest, max(0, credit_balance))
    return MinuteDraw(
        minutes=minutes,
        monthly_draw=monthly_draw,
        credit_draw=credit_draw,
        overage=rest - credit_draw,
    )


def commit_minutes(session: Session, user_id: str, minutes: int, now: Optional[datetime] = None) -> MinuteDraw:
    """Draw minutes down in the caller's transaction."""
    plan_key = resolve_plan_key(session, user_id)
    limit = limit_for_usage(limits_for(plan_key), UsageType.MINUTES_PER_MONTH)
    used = read_usage_count(session, user_id, UsageType.MINUTES_PER_MONTH, now)
    balance = read_credit_balance(session, user_id).balance
    draw = plan_minute_draw(minutes, limit, used, balance)

    if draw.credit_draw:
        taken = consume_credit(session, user_id, draw.credit_draw)
        if taken < draw.credit_draw:
            draw = MinuteDraw(
                minutes=minutes,
                monthly_draw=draw.monthly_draw,
                credit_draw=taken,
                overage=draw.overage + (draw.credit_draw - taken),
            )

    increment_usage(session, user_id, UsageType.MINUTES_PER_MONTH, draw.monthly_increment, now)
    if draw.overage:
        logger.warning(
            "[usage] EXCEEDED",
            extra={"user_id": user_id, "overage": draw.overage, "limit": limit},
        )
    return draw


def track_usage(
    external_id: str,
    usage_type: Union[str, UsageType],
    amount: int = 1,
    now: Optional[datetime] = None,
) -> Optional[MinuteDraw]:
    """
    Usage committer: record consumption regardless of any earlier check.

    Minutes go through the draw-down (allowance, then credit); other types
    increment their counter. Missing user or counter rows are created.
    """
    kind = parse_usage_type(usage_type)
    amount = _validate_amount(amount)
    draw = None
    with get_db_session() as session:
        user_id = ensure_user_row(session, external_id)
        if kind == UsageType.MINUTES_PER_MONTH:
            draw = commit_minutes(session, user_id, amount, now)
        else:
            increment_usage(session, user_id, kind, amount, now)

    logger.info(
        "[usage] committed",
        extra={"external_id": external_id, "usage_type": kind.value, "amount": amount},
    )
    return draw


def track_usage_safely(
    external_id: str,
    usage_type: Union[str, UsageType],
    amount: int = 1,
    now: Optional[datetime] = None,
) -> bool:
    """Bookkeeping after a granted action: failures are logged, never raised."""
    try:
        track_usage(external_id, usage_type, amount, now)
        return True
    except Exception as exc:
        logger.warning(
            "[usage] tracking failed",
            extra={"external_id": external_id, "usage_type": str(usage_type), "amount": amount, "error": str(exc)},
        )
        return False


def _percentage(current: int, limit: int) -> float:
    if is_unlimited(limit):
        return 0.0
    if limit == 0:
        return 100.0 if current > 0 else 0.0
    return round(min(current / limit, 1.0) * 100, 1)


def get_usage_summary(external_id: str, now: Optional[datetime] = None) -> List[UsageSummaryItem]:
    items = []
    with get_db_session() as session:
        user_id = lookup_internal_id(session, external_id)
        limits = limits_for(resolve_plan_key(session, user_id))
        for kind in UsageType:
            limit = limit_for_usage(limits, kind)
            current = read_usage_count(session, user_id, kind, now)
            start, end = period_bounds(kind, now)
            items.append(
                UsageSummaryItem(
                    usage_type=kind,
                    current=current,
                    limit=limit,
                    remaining=None if is_unlimited(limit) else max(0, limit - current),
                    percentage=_percentage(current, limit),
                    is_unlimited=is_unlimited(limit),
                    period_start=start,
                    period_end=end,
                )
            )
    return items


def get_available_minutes(external_id: str, now: Optional[datetime] = None) -> AvailableMinutes:
    with get_db_session() as session:
        user_id = lookup_internal_id(session, external_id)
        limit = limit_for_usage(limits_for(resolve_plan_key(session, user_id)), UsageType.MINUTES_PER_MONTH)
        used = read_usage_count(session, user_id, UsageType.MINUTES_PER_MONTH, now)
        credit = read_credit_balance(session, user_id)

    unlimited = is_unlimited(limit)
    monthly_remaining = None if unlimited else max(0, limit - used)
    return AvailableMinutes(
        monthly_used=used,
        monthly_limit=limit,
        monthly_remaining=monthly_remaining,
        is_unlimited=unlimited,
        topup_balance=credit.balance,
        total_available=None if unlimited else monthly_remaining + credit.balance,
        lifetime_purchased=credit.lifetime_purchased,
        lifetime_consumed=credit.lifetime_consumed,
    )
