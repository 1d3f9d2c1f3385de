"""Interview session routes: start, heartbeat, end and deduction."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from interview_billing.core.auth import authenticated_user_id
from interview_billing.features.sessions.service import (
    deduct_session_minutes,
    end_session,
    record_heartbeat,
    start_session,
)
from interview_billing.models.session import DeductionResult, EndReason, InterviewSession

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class HeartbeatRequest(BaseModel):
    duration_seconds: int = Field(..., ge=0)


class EndRequest(BaseModel):
    duration_seconds: Optional[int] = Field(None, ge=0)
    reason: EndReason = EndReason.EXPLICIT


class EmergencyEndRequest(BaseModel):
    session_id: str
    duration_seconds: Optional[int] = Field(None, ge=0)


@router.post("", response_model=InterviewSession, status_code=201)
def start(user_id: str = Depends(authenticated_user_id)):
    return start_session(user_id)


@router.post("/emergency-end", response_model=DeductionResult)
def emergency_end(request: EmergencyEndRequest, user_id: str = Depends(authenticated_user_id)):
    """Tab-close beacon; safe to fire alongside the explicit end."""
    return end_session(user_id, request.session_id, request.duration_seconds, EndReason.TAB_CLOSE)


@router.post("/{session_id}/heartbeat", response_model=InterviewSession)
def heartbeat(session_id: str, request: HeartbeatRequest, user_id: str = Depends(authenticated_user_id)):
    return record_heartbeat(user_id, session_id, request.duration_seconds)


@router.post("/{session_id}/end", response_model=DeductionResult)
def end(session_id: str, request: EndRequest, user_id: str = Depends(authenticated_user_id)):
    return end_session(user_id, session_id, request.duration_seconds, request.reason)


@router.post("/{session_id}/deduct", response_model=DeductionResult)
def deduct(session_id: str, user_id: str = Depends(authenticated_user_id)):
    """Retry the charge for an ended session; 409 while it is still active."""
    return deduct_session_minutes(session_id, external_id=user_id)
