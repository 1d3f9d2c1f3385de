"""
interview_billing/features/credits/service.py

Top-up credit balance and coupon redemption.

Handles:
- Atomic credit grants (balance and lifetime_purchased together)
- Compare-and-set credit consumption that never drives balance negative
- Coupon creation and exactly-once redemption per (user, code)

Invariant: lifetime_purchased - lifetime_consumed == balance.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import insert, or_, select, update
from sqlalchemy.orm import Session

from interview_billing.core.database import (
    as_utc,
    coupon_redemptions,
    coupons,
    credit_balances,
    get_db_session,
    upsert,
    utcnow,
)
from interview_billing.core.errors import ConflictError, ValidationError
from interview_billing.features.users.service import ensure_user_row, lookup_internal_id
from interview_billing.models.credit import Coupon, CreditBalance, RedemptionFailure, RedemptionResult

logger = logging.getLogger("interview_billing")

CONSUME_RETRIES = 3


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def read_credit_balance(session: Session, user_id: Optional[str]) -> CreditBalance:
    if not user_id:
        return CreditBalance(user_id="")
    row = session.execute(
        select(credit_balances).where(credit_balances.c.user_id == user_id)
    ).first()
    if not row:
        return CreditBalance(user_id=user_id)
    return CreditBalance(
        user_id=row.user_id,
        balance=row.balance,
        lifetime_purchased=row.lifetime_purchased,
        lifetime_consumed=row.lifetime_consumed,
    )


def get_credit_balance(external_id: str) -> CreditBalance:
    with get_db_session() as session:
        user_id = lookup_internal_id(session, external_id)
        return read_credit_balance(session, user_id)


def grant_credit(session: Session, user_id: str, minutes: int) -> int:
    """Add ``minutes`` to the balance in one upsert; returns the new balance."""
    if minutes <= 0:
        raise ValidationError("Credit grant must be a positive number of minutes")
    stmt = upsert(session, credit_balances).values(
        user_id=user_id,
        balance=minutes,
        lifetime_purchased=minutes,
        lifetime_consumed=0,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "balance": credit_balances.c.balance + stmt.excluded.balance,
            "lifetime_purchased": credit_balances.c.lifetime_purchased + stmt.excluded.lifetime_purchased,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return read_credit_balance(session, user_id).balance


def consume_credit(session: Session, user_id: str, minutes: int) -> int:
    """
    Draw up to ``minutes`` from the balance; returns what was actually taken.

    The decrement is conditional on the balance still covering it, so a
    concurrent draw can only make this call take less, never overdraw.
    """
    if minutes <= 0:
        return 0
    for _ in range(CONSUME_RETRIES):
        available = read_credit_balance(session, user_id).balance
        take = min(minutes, available)
        if take <= 0:
            return 0
        result = session.execute(
            update(credit_balances)
            .where(credit_balances.c.user_id == user_id)
            .where(credit_balances.c.balance >= take)
            .values(
                balance=credit_balances.c.balance - take,
                lifetime_consumed=credit_balances.c.lifetime_consumed + take,
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 1:
            return take

    logger.warning(
        "[credits] consume contention, nothing drawn",
        extra={"user_id": user_id, "minutes": minutes},
    )
    return 0


def _row_to_coupon(row) -> Coupon:
    return Coupon(
        code=row.code,
        minutes=row.minutes,
        description=row.description,
        active=bool(row.active),
        expires_at=as_utc(row.expires_at),
        max_redemptions=row.max_redemptions,
        redemption_count=row.redemption_count,
    )


def create_coupon(
    code: str,
    minutes: int,
    description: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    max_redemptions: Optional[int] = None,
    active: bool = True,
) -> Coupon:
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required")
    if minutes <= 0:
        raise ValidationError("Coupon minutes must be positive")
    if max_redemptions is not None and max_redemptions <= 0:
        raise ValidationError("max_redemptions must be positive")

    with get_db_session() as session:
        exists = session.execute(select(coupons.c.code).where(coupons.c.code == normalized)).scalar()
        if exists:
            raise ConflictError(f"Coupon {normalized} already exists")
        session.execute(
            insert(coupons).values(
                code=normalized,
                minutes=minutes,
                description=description,
                active=active,
                expires_at=as_utc(expires_at),
                max_redemptions=max_redemptions,
                redemption_count=0,
                created_at=utcnow(),
            )
        )
        row = session.execute(select(coupons).where(coupons.c.code == normalized)).first()
    logger.info("[credits] coupon created", extra={"code": normalized, "minutes": minutes})
    return _row_to_coupon(row)


def set_coupon_active(code: str, active: bool) -> Optional[Coupon]:
    normalized = normalize_code(code)
    with get_db_session() as session:
        session.execute(update(coupons).where(coupons.c.code == normalized).values(active=active))
        row = session.execute(select(coupons).where(coupons.c.code == normalized)).first()
        return _row_to_coupon(row) if row else None


def get_coupon(code: str) -> Optional[Coupon]:
    with get_db_session() as session:
        row = session.execute(select(coupons).where(coupons.c.code == normalize_code(code))).first()
        return _row_to_coupon(row) if row else None


_FAILURE_MESSAGES = {
    RedemptionFailure.INVALID_CODE: "Invalid coupon code",
    RedemptionFailure.INACTIVE: "This coupon is no longer active",
    RedemptionFailure.EXPIRED: "This coupon has expired",
    RedemptionFailure.EXHAUSTED: "This coupon has reached its redemption limit",
    RedemptionFailure.ALREADY_REDEEMED: "You have already redeemed this coupon",
}


def _failure(reason: RedemptionFailure, balance: Optional[int] = None) -> RedemptionResult:
    return RedemptionResult(
        success=False,
        minutes_added=0,
        message=_FAILURE_MESSAGES[reason],
        new_balance=balance,
        reason=reason,
    )


def redeem_coupon(external_id: str, code: str, now: Optional[datetime] = None) -> RedemptionResult:
    """
    Convert a coupon into top-up minutes, once per (user, code).

    The redemption row and the credit grant commit in one transaction; a
    resubmission reports ``already_redeemed`` and leaves the balance alone.
    """
    normalized = normalize_code(code)
    if not normalized:
        return _failure(RedemptionFailure.INVALID_CODE)
    now = as_utc(now) or utcnow()

    with get_db_session() as session:
        user_id = ensure_user_row(session, external_id)

        already = session.execute(
            select(coupon_redemptions.c.id)
            .where(coupon_redemptions.c.user_id == user_id)
            .where(coupon_redemptions.c.code == normalized)
        ).first()
        if already:
            return _failure(RedemptionFailure.ALREADY_REDEEMED, read_credit_balance(session, user_id).balance)

        row = session.execute(select(coupons).where(coupons.c.code == normalized)).first()
        if not row:
            return _failure(RedemptionFailure.INVALID_CODE)
        coupon = _row_to_coupon(row)
        if not coupon.active:
            return _failure(RedemptionFailure.INACTIVE)
        if coupon.expires_at is not None and coupon.expires_at <= now:
            return _failure(RedemptionFailure.EXPIRED)
        if coupon.max_redemptions is not None and coupon.redemption_count >= coupon.max_redemptions:
            return _failure(RedemptionFailure.EXHAUSTED)

        stmt = upsert(session, coupon_redemptions).values(
            user_id=user_id,
            code=normalized,
            minutes=coupon.minutes,
            redeemed_at=now,
        )
        inserted = session.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "code"]))
        if inserted.rowcount == 0:
            return _failure(RedemptionFailure.ALREADY_REDEEMED, read_credit_balance(session, user_id).balance)

        claimed = session.execute(
            update(coupons)
            .where(coupons.c.code == normalized)
            .where(or_(coupons.c.max_redemptions.is_(None), coupons.c.redemption_count < coupons.c.max_redemptions))
            .values(redemption_count=coupons.c.redemption_count + 1)
        )
        if claimed.rowcount == 0:
            session.rollback()
            return _failure(RedemptionFailure.EXHAUSTED)

        new_balance = grant_credit(session, user_id, coupon.minutes)

    logger.info(
        "[credits] coupon redeemed",
        extra={"external_id": external_id, "code": normalized, "minutes": coupon.minutes},
    )
    return RedemptionResult(
        success=True,
        minutes_added=coupon.minutes,
        message=f"Added {coupon.minutes} minutes to your balance",
        new_balance=new_balance,
    )
