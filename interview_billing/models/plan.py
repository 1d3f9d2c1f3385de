"""
interview_billing/models/plan.py

Plan catalog models.

Plans carry quantitative limits only. The identity provider tells us which
plan a user holds; the limit values live here.
"""

from enum import Enum
from typing import Dict

from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class PlanKey(str, Enum):
    """Plan tiers, declared lowest to highest."""

    FREE_USER = "free_user"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return list(PlanKey).index(self)


class Limits(BaseModel):
    """Per-plan limits; -1 means unlimited."""
    model_config = ConfigDict(frozen=True)

    minutes_per_month: int
    interviews_per_day: int
    analyses_per_month: int
    video_reviews_per_month: int

    def as_dict(self) -> Dict[str, int]:
        return self.model_dump()


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: PlanKey
    name: str
    price: int
    limits: Limits
