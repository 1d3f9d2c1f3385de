"""
interview_billing/models/usage.py

Usage ledger models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UsageType(str, Enum):
    MINUTES_PER_MONTH = "minutes_per_month"
    INTERVIEWS_PER_DAY = "interviews_per_day"
    DETAILED_ANALYSIS_PER_MONTH = "detailed_analysis_per_month"
    VIDEO_REVIEWS_PER_MONTH = "video_reviews_per_month"


class Coverage(str, Enum):
    """Which pool pays for a checked request."""

    ALLOWANCE = "allowance"
    CREDIT = "credit"
    UNLIMITED = "unlimited"
    NONE = "none"


class UsageCheckResult(BaseModel):
    """
    Answer of the quota gate.

    ``remaining`` is None when unlimited. For minutes, ``monthly_allowed``
    and ``credit_allowed`` say which pool covers the request and
    ``coverage`` names the pool the caller should warn about.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    usage_type: UsageType
    requested: int
    current_usage: int
    limit_value: int
    remaining: Optional[int]
    is_unlimited: bool
    monthly_allowed: bool
    credit_allowed: bool = False
    coverage: Coverage
    topup_balance: int = 0
    total_available: Optional[int] = None


class MinuteDraw(BaseModel):
    """Split of a minute deduction across monthly allowance, credit and overage."""
    model_config = ConfigDict(frozen=True)

    minutes: int
    monthly_draw: int
    credit_draw: int
    overage: int

    @property
    def monthly_increment(self) -> int:
        # Overage is recorded on the monthly counter so EXCEEDED stays visible
        return self.monthly_draw + self.overage


class UsageSummaryItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    usage_type: UsageType
    current: int
    limit: int
    remaining: Optional[int]
    percentage: float
    is_unlimited: bool
    period_start: datetime
    period_end: datetime


class AvailableMinutes(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly_used: int
    monthly_limit: int
    monthly_remaining: Optional[int]
    is_unlimited: bool
    topup_balance: int
    total_available: Optional[int]
    lifetime_purchased: int
    lifetime_consumed: int
