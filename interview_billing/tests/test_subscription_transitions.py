"""
Subscription transitions: idempotent, fallback on upsert failure, and
cancellation collapsing to the free plan.
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from interview_billing.core.database import get_db_session, subscriptions
from interview_billing.core.errors import UpstreamError, ValidationError
from interview_billing.features.subscriptions.service import (
    cancel_subscription,
    get_subscription,
    sync_plan_from_claims,
    transition,
)
from interview_billing.models.plan import PlanKey
from interview_billing.models.subscription import SubscriptionStatus

SERVICE = "interview_billing.features.subscriptions.service"
START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def _subscription_rows():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(subscriptions)).scalar_one()


class TestTransition:
    def test_creates_active_subscription(self):
        sub = transition("user_t", "starter", START, END)
        assert sub.plan_key == PlanKey.STARTER
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == START
        assert sub.current_period_end == END

    def test_replay_is_idempotent(self):
        first = transition("user_t", "professional", START, END)
        second = transition("user_t", "professional", START, END)
        assert first == second
        assert _subscription_rows() == 1

    def test_alias_accepted(self):
        assert transition("user_t", "free").plan_key == PlanKey.FREE_USER

    def test_unknown_plan(self):
        with pytest.raises(ValidationError):
            transition("user_t", "enterprise")
        assert get_subscription("user_t") is None

    def test_period_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            transition("user_t", "starter", END, START)

    def test_default_period(self):
        sub = transition("user_t", "starter")
        assert (sub.current_period_end - sub.current_period_start).days == 30


class TestFallbackPath:
    def test_direct_update_used_when_upsert_fails(self):
        transition("user_f", "starter", START, END)
        with patch(f"{SERVICE}._upsert_subscription", side_effect=RuntimeError("conflict target missing")):
            sub = transition("user_f", "professional", START, END)
        assert sub.plan_key == PlanKey.PROFESSIONAL
        assert _subscription_rows() == 1

    def test_fallback_inserts_when_row_missing(self):
        with patch(f"{SERVICE}._upsert_subscription", side_effect=RuntimeError("boom")):
            sub = transition("user_new", "premium", START, END)
        assert sub.plan_key == PlanKey.PREMIUM

    def test_both_paths_failing_raises(self):
        transition("user_f", "starter", START, END)
        with patch(f"{SERVICE}._upsert_subscription", side_effect=RuntimeError("boom")), \
                patch(f"{SERVICE}._update_or_insert_subscription", side_effect=RuntimeError("still down")):
            with pytest.raises(UpstreamError):
                transition("user_f", "premium", START, END)
        assert get_subscription("user_f").plan_key == PlanKey.STARTER


class TestCancel:
    def test_cancel_lands_on_free(self):
        transition("user_c", "professional", START, END)
        sub = cancel_subscription("user_c")
        assert sub.plan_key == PlanKey.FREE_USER
        assert sub.status == SubscriptionStatus.CANCELLED
        assert _subscription_rows() == 1

    def test_resubscribe_after_cancel(self):
        cancel_subscription("user_c")
        sub = transition("user_c", "starter", START, END)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.plan_key == PlanKey.STARTER


class TestSyncFromClaims:
    def test_highest_claimed_plan_wins(self):
        claims = {"sub": "user_s", "pla": "u:starter,u:professional,o:premium"}
        sub, changed = sync_plan_from_claims("user_s", claims)
        assert changed is True
        assert sub.plan_key == PlanKey.PROFESSIONAL

    def test_unchanged_when_already_aligned(self):
        claims = {"sub": "user_s", "pla": "u:starter"}
        sync_plan_from_claims("user_s", claims)
        _, changed = sync_plan_from_claims("user_s", claims)
        assert changed is False

    def test_no_claims_means_free(self):
        transition("user_s", "starter", START, END)
        sub, changed = sync_plan_from_claims("user_s", {"sub": "user_s"})
        assert changed is True
        assert sub.plan_key == PlanKey.FREE_USER


class TestPlanRoutes:
    def test_upgrade_within_claims(self, client, jwt_headers):
        response = client.post(
            "/api/billing/upgrade-plan",
            json={"plan_key": "starter"},
            headers=jwt_headers("user_r", plans="u:professional"),
        )
        assert response.status_code == 200
        assert response.json()["plan_key"] == "starter"

    def test_upgrade_beyond_claims_refused(self, client, jwt_headers):
        response = client.post(
            "/api/billing/upgrade-plan",
            json={"plan_key": "premium"},
            headers=jwt_headers("user_r", plans="u:starter"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "plan_not_entitled"
        assert get_subscription("user_r") is None

    def test_upgrade_unknown_plan(self, client, jwt_headers):
        response = client.post(
            "/api/billing/upgrade-plan", json={"plan_key": "gold"}, headers=jwt_headers("user_r")
        )
        assert response.status_code == 400

    def test_sync_plan_route(self, client, jwt_headers):
        response = client.post("/api/billing/sync-plan", headers=jwt_headers("user_r", plans="u:starter"))
        assert response.status_code == 200
        body = response.json()
        assert body["changed"] is True
        assert body["subscription"]["plan_key"] == "starter"
