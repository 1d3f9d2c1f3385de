from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from interview_billing.models.plan import PlanKey


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Subscription(BaseModel):
    """Current plan and billing period of one user."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_key: PlanKey
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
