"""
interview_billing/features/subscriptions/service.py

Subscription transition handler.

Handles:
- Default free subscription creation during reconciliation
- Plan transitions (upgrade, downgrade, webhook plan change)
- Cancellation (collapses to active-equivalent free plan)
- Plan sync from identity-provider claims

Sole writer of the subscriptions table. Never touches usage_records or
credit_balances: usage and credit survive every transition.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from interview_billing.core.clerk_auth import current_plan_claims
from interview_billing.core.config import settings
from interview_billing.core.database import as_utc, get_db_session, subscriptions, upsert, utcnow
from interview_billing.core.errors import UpstreamError, ValidationError
from interview_billing.features.plans.service import DEFAULT_PLAN_KEY, normalize_plan_key, plan_key_from_claims
from interview_billing.features.users.service import ensure_user_row, lookup_internal_id
from interview_billing.models.plan import PlanKey
from interview_billing.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger("interview_billing")


def default_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    start = now or utcnow()
    return start, start + timedelta(days=settings.DEFAULT_PERIOD_DAYS)


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        user_id=row.user_id,
        plan_key=normalize_plan_key(row.plan_key) or DEFAULT_PLAN_KEY,
        status=SubscriptionStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
    )


def read_subscription(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.user_id == user_id)
    ).first()
    return _row_to_subscription(row) if row else None


def resolve_plan_key(session: Session, user_id: Optional[str]) -> PlanKey:
    """Plan the user is entitled to; no subscription row means free."""
    if not user_id:
        return DEFAULT_PLAN_KEY
    stored = session.execute(
        select(subscriptions.c.plan_key).where(subscriptions.c.user_id == user_id)
    ).scalar()
    return normalize_plan_key(stored) or DEFAULT_PLAN_KEY


def ensure_subscription(session: Session, user_id: str) -> None:
    """Create the default free subscription if the user has none."""
    start, end = default_period()
    stmt = upsert(session, subscriptions).values(
        user_id=user_id,
        plan_key=DEFAULT_PLAN_KEY.value,
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=start,
        current_period_end=end,
        created_at=start,
        updated_at=start,
    )
    session.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))


def get_subscription(external_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        user_id = lookup_internal_id(session, external_id)
        if not user_id:
            return None
        return read_subscription(session, user_id)


def _upsert_subscription(session: Session, user_id: str, values: Dict[str, Any]) -> None:
    """Primary path: one atomic statement keyed by user."""
    stmt = upsert(session, subscriptions).values(user_id=user_id, created_at=values["updated_at"], **values)
    stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
    session.execute(stmt)


def _update_or_insert_subscription(session: Session, user_id: str, values: Dict[str, Any]) -> None:
    """Fallback path: direct UPDATE, INSERT when no row exists."""
    result = session.execute(
        update(subscriptions).where(subscriptions.c.user_id == user_id).values(**values)
    )
    if result.rowcount == 0:
        session.execute(
            insert(subscriptions).values(user_id=user_id, created_at=values["updated_at"], **values)
        )


def _apply(external_id: str, values: Dict[str, Any]) -> Subscription:
    try:
        with get_db_session() as session:
            user_id = ensure_user_row(session, external_id)
            _upsert_subscription(session, user_id, values)
            return read_subscription(session, user_id)
    except Exception as exc:
        logger.warning(
            "[subscriptions] atomic upsert failed, using direct update",
            extra={"external_id": external_id, "error": str(exc)},
        )

    try:
        with get_db_session() as session:
            user_id = ensure_user_row(session, external_id)
            _update_or_insert_subscription(session, user_id, values)
            return read_subscription(session, user_id)
    except Exception as exc:
        logger.error(
            "[subscriptions] fallback update failed",
            extra={"external_id": external_id, "error": str(exc)},
        )
        raise UpstreamError("Subscription update failed") from exc


def transition(
    external_id: str,
    new_plan_key: Union[str, PlanKey],
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> Subscription:
    """
    Move a user to ``new_plan_key`` (status active).

    Replaying the same transition leaves the same row. Missing period
    bounds default to now and now + DEFAULT_PERIOD_DAYS.
    """
    plan_key = normalize_plan_key(new_plan_key)
    if plan_key is None:
        raise ValidationError(f"Unknown plan: {new_plan_key}")

    default_start, default_end = default_period()
    start = as_utc(period_start) or default_start
    end = as_utc(period_end) or (start + timedelta(days=settings.DEFAULT_PERIOD_DAYS))
    if end <= start:
        raise ValidationError("Billing period end must be after its start")

    values = {
        "plan_key": plan_key.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "current_period_start": start,
        "current_period_end": end,
        "updated_at": utcnow(),
    }
    subscription = _apply(external_id, values)
    logger.info(
        "[subscriptions] transition",
        extra={"external_id": external_id, "plan_key": plan_key.value},
    )
    return subscription


def cancel_subscription(external_id: str) -> Subscription:
    """Cancellation lands on the free plan; the record is never deleted."""
    start, end = default_period()
    values = {
        "plan_key": DEFAULT_PLAN_KEY.value,
        "status": SubscriptionStatus.CANCELLED.value,
        "current_period_start": start,
        "current_period_end": end,
        "updated_at": utcnow(),
    }
    subscription = _apply(external_id, values)
    logger.info("[subscriptions] cancelled", extra={"external_id": external_id})
    return subscription


def sync_plan_from_claims(external_id: str, claims: Dict[str, Any]) -> Tuple[Subscription, bool]:
    """Align the stored plan with the caller's claims; returns (subscription, changed)."""
    claimed = plan_key_from_claims(current_plan_claims(claims))
    existing = get_subscription(external_id)
    if existing is not None and existing.plan_key == claimed and existing.status == SubscriptionStatus.ACTIVE:
        return existing, False
    return transition(external_id, claimed), True
