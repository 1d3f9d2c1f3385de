"""
interview_billing/features/sessions/service.py

Interview session lifecycle and exactly-once minute deduction.

A session can be ended from three paths (explicit end, tab-close beacon,
heartbeat timeout). All of them funnel into deduct_session_minutes, which
flips duration_deducted with a conditional UPDATE in the same transaction
as the draw-down, so only the first caller touches the ledger.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union
from uuid import uuid4

from sqlalchemy import case, insert, select, update
from sqlalchemy.orm import Session

from interview_billing.core.config import settings
from interview_billing.core.database import as_utc, get_db_session, interview_sessions, utcnow
from interview_billing.core.errors import ConflictError, NotFoundError, ValidationError
from interview_billing.features.usage.service import commit_minutes, enforce_usage, increment_usage
from interview_billing.features.users.service import ensure_user_row, lookup_internal_id
from interview_billing.models.session import DeductionResult, EndReason, InterviewSession, SessionStatus
from interview_billing.models.usage import UsageType

logger = logging.getLogger("interview_billing")


def minutes_for(duration_seconds: int) -> int:
    """Billable minutes: ceiling of the duration."""
    if duration_seconds <= 0:
        return 0
    return -(-duration_seconds // 60)


def _row_to_session(row) -> InterviewSession:
    return InterviewSession(
        id=row.id,
        user_id=row.user_id,
        status=SessionStatus(row.status),
        started_at=as_utc(row.started_at),
        last_heartbeat_at=as_utc(row.last_heartbeat_at),
        ended_at=as_utc(row.ended_at),
        end_reason=EndReason(row.end_reason) if row.end_reason else None,
        duration_seconds=row.duration_seconds,
        duration_deducted=bool(row.duration_deducted),
    )


def _load_row(session: Session, session_id: str, external_id: Optional[str] = None):
    query = select(interview_sessions).where(interview_sessions.c.id == session_id)
    if external_id is not None:
        user_id = lookup_internal_id(session, external_id)
        if not user_id:
            raise NotFoundError("Session not found")
        query = query.where(interview_sessions.c.user_id == user_id)
    row = session.execute(query).first()
    if not row:
        raise NotFoundError("Session not found")
    return row


def _validate_duration(duration_seconds: Optional[int]) -> Optional[int]:
    if duration_seconds is None:
        return None
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int) or duration_seconds < 0:
        raise ValidationError("duration_seconds must be a non-negative integer")
    return duration_seconds


def _monotonic_duration(value: int):
    return case(
        (interview_sessions.c.duration_seconds < value, value),
        else_=interview_sessions.c.duration_seconds,
    )


def get_session(external_id: str, session_id: str) -> InterviewSession:
    with get_db_session() as session:
        return _row_to_session(_load_row(session, session_id, external_id))


def start_session(external_id: str, now: Optional[datetime] = None) -> InterviewSession:
    """
    Open an interview session.

    Gated on the daily interview count and on at least one coverable minute;
    the session row and the interview count commit together.
    """
    enforce_usage(external_id, UsageType.INTERVIEWS_PER_DAY, 1, now)
    enforce_usage(external_id, UsageType.MINUTES_PER_MONTH, 1, now)

    now = as_utc(now) or utcnow()
    session_id = str(uuid4())
    with get_db_session() as session:
        user_id = ensure_user_row(session, external_id)
        session.execute(
            insert(interview_sessions).values(
                id=session_id,
                user_id=user_id,
                status=SessionStatus.ACTIVE.value,
                started_at=now,
                last_heartbeat_at=now,
                duration_seconds=0,
                duration_deducted=False,
            )
        )
        increment_usage(session, user_id, UsageType.INTERVIEWS_PER_DAY, 1, now)
        row = _load_row(session, session_id)

    logger.info("[sessions] started", extra={"external_id": external_id, "session_id": session_id})
    return _row_to_session(row)


def record_heartbeat(
    external_id: str,
    session_id: str,
    duration_seconds: int,
    now: Optional[datetime] = None,
) -> InterviewSession:
    """Refresh liveness; the stored duration only ever grows."""
    duration_seconds = _validate_duration(duration_seconds)
    if duration_seconds is None:
        raise ValidationError("duration_seconds is required")
    now = as_utc(now) or utcnow()
    with get_db_session() as session:
        row = _load_row(session, session_id, external_id)
        if row.status == SessionStatus.ACTIVE.value:
            session.execute(
                update(interview_sessions)
                .where(interview_sessions.c.id == session_id)
                .where(interview_sessions.c.status == SessionStatus.ACTIVE.value)
                .values(
                    duration_seconds=_monotonic_duration(duration_seconds),
                    last_heartbeat_at=now,
                )
            )
            row = _load_row(session, session_id)
        return _row_to_session(row)


def end_session(
    external_id: Optional[str],
    session_id: str,
    duration_seconds: Optional[int] = None,
    reason: Union[str, EndReason] = EndReason.EXPLICIT,
    now: Optional[datetime] = None,
) -> DeductionResult:
    """
    Mark a session completed and run the deduction.

    Without a reported duration the elapsed time is used: up to now for
    explicit and tab-close ends, up to the last heartbeat for timeouts.
    ``external_id=None`` is the system path used by the sweeper.
    """
    try:
        reason = EndReason(reason)
    except ValueError:
        raise ValidationError(f"Unknown end reason: {reason}")
    duration_seconds = _validate_duration(duration_seconds)
    now = as_utc(now) or utcnow()

    with get_db_session() as session:
        row = _load_row(session, session_id, external_id)
        if row.status == SessionStatus.ACTIVE.value:
            if duration_seconds is None:
                until = as_utc(row.last_heartbeat_at) if reason == EndReason.HEARTBEAT_TIMEOUT else now
                duration_seconds = max(0, int((until - as_utc(row.started_at)).total_seconds()))
            session.execute(
                update(interview_sessions)
                .where(interview_sessions.c.id == session_id)
                .where(interview_sessions.c.status == SessionStatus.ACTIVE.value)
                .values(
                    status=SessionStatus.COMPLETED.value,
                    ended_at=now,
                    end_reason=reason.value,
                    duration_seconds=_monotonic_duration(duration_seconds),
                )
            )

    logger.info(
        "[sessions] ended",
        extra={"session_id": session_id, "reason": reason.value},
    )
    return deduct_session_minutes(session_id, now=now)


def deduct_session_minutes(
    session_id: str,
    external_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DeductionResult:
    """
    Charge a completed session's minutes exactly once.

    Repeats return ``already_deducted=True`` with the original split and
    leave the ledger untouched. An unknown session raises NotFoundError;
    a session that is still active raises ConflictError and is not claimed.
    """
    now = as_utc(now) or utcnow()
    with get_db_session() as session:
        row = _load_row(session, session_id, external_id)
        claimed = session.execute(
            update(interview_sessions)
            .where(interview_sessions.c.id == session_id)
            .where(interview_sessions.c.status != SessionStatus.ACTIVE.value)
            .where(interview_sessions.c.duration_deducted.is_(False))
            .values(duration_deducted=True)
        )
        if claimed.rowcount == 0:
            row = _load_row(session, session_id)
            if row.status == SessionStatus.ACTIVE.value:
                raise ConflictError("Session is still active; end it before deducting")
            result = DeductionResult(
                session_id=session_id,
                already_deducted=True,
                minutes=row.minutes_deducted,
                monthly_deducted=row.monthly_deducted,
                credit_deducted=row.credit_deducted,
                overage=row.overage_minutes,
            )
            logger.info("[sessions] deduction already applied", extra={"session_id": session_id})
            return result

        row = _load_row(session, session_id)
        minutes = minutes_for(row.duration_seconds)
        monthly = credit = overage = 0
        if minutes:
            draw = commit_minutes(session, row.user_id, minutes, now)
            monthly, credit, overage = draw.monthly_draw, draw.credit_draw, draw.overage

        session.execute(
            update(interview_sessions)
            .where(interview_sessions.c.id == session_id)
            .values(
                minutes_deducted=minutes,
                monthly_deducted=monthly,
                credit_deducted=credit,
                overage_minutes=overage,
            )
        )

    logger.info(
        "[sessions] minutes deducted",
        extra={
            "session_id": session_id,
            "minutes": minutes,
            "monthly_deducted": monthly,
            "credit_deducted": credit,
            "overage": overage,
        },
    )
    return DeductionResult(
        session_id=session_id,
        already_deducted=False,
        minutes=minutes,
        monthly_deducted=monthly,
        credit_deducted=credit,
        overage=overage,
    )


def find_stale_sessions(stale_after_seconds: Optional[int] = None, now: Optional[datetime] = None) -> List[str]:
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(seconds=stale_after_seconds or settings.SESSION_STALE_AFTER_SECONDS)
    with get_db_session() as session:
        return list(
            session.execute(
                select(interview_sessions.c.id)
                .where(interview_sessions.c.status == SessionStatus.ACTIVE.value)
                .where(interview_sessions.c.last_heartbeat_at < cutoff)
                .order_by(interview_sessions.c.last_heartbeat_at)
            ).scalars()
        )


def sweep_stale_sessions(stale_after_seconds: Optional[int] = None, now: Optional[datetime] = None) -> List[DeductionResult]:
    """End every session whose heartbeat went silent; per-session failures are logged."""
    results = []
    for session_id in find_stale_sessions(stale_after_seconds, now):
        try:
            results.append(end_session(None, session_id, reason=EndReason.HEARTBEAT_TIMEOUT, now=now))
        except Exception as exc:
            logger.error(
                "[sessions] sweep failed",
                extra={"session_id": session_id, "error": str(exc)},
            )
    return results
