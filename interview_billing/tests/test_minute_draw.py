"""
Minute draw-down: monthly allowance first, then top-up credit, then overage.
"""
import random

import pytest

from interview_billing.core.database import get_db_session
from interview_billing.features.credits.service import get_credit_balance, grant_credit
from interview_billing.features.subscriptions.service import transition
from interview_billing.features.usage.service import (
    get_available_minutes,
    increment_usage,
    plan_minute_draw,
    track_usage,
)
from interview_billing.features.users.service import ensure_user_row
from interview_billing.models.plan import UNLIMITED
from interview_billing.models.usage import UsageType


class TestPlanMinuteDraw:
    def test_allowance_then_credit(self):
        draw = plan_minute_draw(minutes=10, monthly_limit=10, monthly_used=8, credit_balance=20)
        assert draw.monthly_draw == 2
        assert draw.credit_draw == 8
        assert draw.overage == 0

    def test_overage_when_credit_runs_out(self):
        draw = plan_minute_draw(minutes=10, monthly_limit=10, monthly_used=10, credit_balance=4)
        assert (draw.monthly_draw, draw.credit_draw, draw.overage) == (0, 4, 6)
        assert draw.monthly_increment == 6

    def test_unlimited_allowance_absorbs_everything(self):
        draw = plan_minute_draw(minutes=90, monthly_limit=UNLIMITED, monthly_used=5000, credit_balance=7)
        assert (draw.monthly_draw, draw.credit_draw, draw.overage) == (90, 0, 0)

    def test_negative_minutes_rejected(self):
        with pytest.raises(ValueError):
            plan_minute_draw(minutes=-1, monthly_limit=10, monthly_used=0, credit_balance=0)


class TestCommitMinutes:
    def test_worked_example(self, now):
        """Starter allows 30; with 28 used and 20 credit, 15 minutes split 2 + 13."""
        transition("user_draw", "starter")
        with get_db_session() as session:
            user_id = ensure_user_row(session, "user_draw")
            increment_usage(session, user_id, UsageType.MINUTES_PER_MONTH, 28, now)
            grant_credit(session, user_id, 20)

        draw = track_usage("user_draw", UsageType.MINUTES_PER_MONTH, 15, now)
        assert draw.monthly_draw == 2
        assert draw.credit_draw == 13
        assert draw.overage == 0

        available = get_available_minutes("user_draw", now)
        assert available.monthly_used == 30
        assert available.monthly_remaining == 0
        assert available.topup_balance == 7

        credit = get_credit_balance("user_draw")
        assert credit.lifetime_purchased == 20
        assert credit.lifetime_consumed == 13

    def test_free_plan_draw_down(self, now):
        with get_db_session() as session:
            user_id = ensure_user_row(session, "user_free_draw")
            grant_credit(session, user_id, 5)

        draw = track_usage("user_free_draw", UsageType.MINUTES_PER_MONTH, 4, now)
        assert (draw.monthly_draw, draw.credit_draw, draw.overage) == (2, 2, 0)
        assert get_credit_balance("user_free_draw").balance == 3

    def test_overage_lands_on_monthly_counter(self, now):
        draw = track_usage("user_over", UsageType.MINUTES_PER_MONTH, 5, now)
        assert (draw.monthly_draw, draw.credit_draw, draw.overage) == (2, 0, 3)
        assert get_available_minutes("user_over", now).monthly_used == 5


@pytest.mark.parametrize("seed", range(10))
def test_minute_conservation(seed, now):
    """Every deducted minute is accounted for exactly once; credit never goes negative."""
    rng = random.Random(seed)
    external_id = f"user_conserve_{seed}"
    transition(external_id, rng.choice(["free_user", "starter", "professional"]))
    starting_credit = rng.randint(0, 40)
    if starting_credit:
        with get_db_session() as session:
            grant_credit(session, ensure_user_row(session, external_id), starting_credit)

    total_credit_drawn = 0
    for _ in range(rng.randint(1, 8)):
        minutes = rng.randint(1, 45)
        before = get_available_minutes(external_id, now)
        draw = track_usage(external_id, UsageType.MINUTES_PER_MONTH, minutes, now)
        after = get_available_minutes(external_id, now)

        assert draw.monthly_draw + draw.credit_draw + draw.overage == minutes
        assert after.monthly_used - before.monthly_used == draw.monthly_increment
        assert before.topup_balance - after.topup_balance == draw.credit_draw
        assert after.topup_balance >= 0
        total_credit_drawn += draw.credit_draw

    assert get_credit_balance(external_id).balance == starting_credit - total_credit_drawn
