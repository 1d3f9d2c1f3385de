from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreditBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    balance: int = 0
    lifetime_purchased: int = 0
    lifetime_consumed: int = 0


class RedemptionFailure(str, Enum):
    INVALID_CODE = "invalid_code"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    ALREADY_REDEEMED = "already_redeemed"


class Coupon(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    minutes: int
    description: Optional[str] = None
    active: bool = True
    expires_at: Optional[datetime] = None
    max_redemptions: Optional[int] = None
    redemption_count: int = 0


class RedemptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    minutes_added: int = 0
    message: str
    new_balance: Optional[int] = None
    reason: Optional[RedemptionFailure] = None
