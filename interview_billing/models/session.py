from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class EndReason(str, Enum):
    EXPLICIT = "explicit"
    TAB_CLOSE = "tab_close"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"


class InterviewSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    status: SessionStatus
    started_at: datetime
    last_heartbeat_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    duration_seconds: int = 0
    duration_deducted: bool = False


class DeductionResult(BaseModel):
    """Outcome of the once-per-session minute deduction."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    already_deducted: bool
    minutes: int
    monthly_deducted: int
    credit_deducted: int
    overage: int = 0
