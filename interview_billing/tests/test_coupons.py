"""
Coupon redemption: once per (user, code), credit granted in the same
transaction as the redemption record.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from interview_billing.core.database import coupon_redemptions, get_db_session
from interview_billing.core.errors import ConflictError, ValidationError
from interview_billing.features.credits.service import (
    create_coupon,
    get_coupon,
    get_credit_balance,
    redeem_coupon,
    set_coupon_active,
)
from interview_billing.models.credit import RedemptionFailure


def _redemption_count(code):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(coupon_redemptions).where(coupon_redemptions.c.code == code)
        ).scalar_one()


class TestCreateCoupon:
    def test_code_is_normalized(self):
        coupon = create_coupon("  welcome30 ", 30, description="Welcome bonus")
        assert coupon.code == "WELCOME30"
        assert coupon.active is True
        assert get_coupon("welcome30") == coupon

    def test_duplicate_rejected(self):
        create_coupon("DUP", 5)
        with pytest.raises(ConflictError):
            create_coupon("dup", 10)

    @pytest.mark.parametrize("code,minutes,max_redemptions", [("", 5, None), ("X", 0, None), ("Y", 5, 0)])
    def test_invalid_definitions(self, code, minutes, max_redemptions):
        with pytest.raises(ValidationError):
            create_coupon(code, minutes, max_redemptions=max_redemptions)


class TestRedeemCoupon:
    def test_first_redemption_grants_minutes(self, now):
        create_coupon("WELCOME30", 30)
        result = redeem_coupon("user_a", "welcome30", now)
        assert result.success is True
        assert result.minutes_added == 30
        assert result.new_balance == 30
        assert get_credit_balance("user_a").lifetime_purchased == 30
        assert get_coupon("WELCOME30").redemption_count == 1

    def test_second_redemption_is_refused(self, now):
        create_coupon("WELCOME30", 30)
        redeem_coupon("user_a", "WELCOME30", now)
        again = redeem_coupon("user_a", "WELCOME30", now)

        assert again.success is False
        assert again.reason == RedemptionFailure.ALREADY_REDEEMED
        assert again.minutes_added == 0
        assert again.new_balance == 30
        assert get_credit_balance("user_a").balance == 30
        assert _redemption_count("WELCOME30") == 1

    def test_other_users_can_redeem(self, now):
        create_coupon("SHARED", 10)
        for user in ("user_a", "user_b", "user_c"):
            assert redeem_coupon(user, "SHARED", now).success is True
        assert get_coupon("SHARED").redemption_count == 3

    def test_unknown_code(self, now):
        result = redeem_coupon("user_a", "NOPE", now)
        assert result.reason == RedemptionFailure.INVALID_CODE
        assert get_credit_balance("user_a").balance == 0

    def test_blank_code(self):
        assert redeem_coupon("user_a", "   ").reason == RedemptionFailure.INVALID_CODE

    def test_inactive(self, now):
        create_coupon("OLD", 10)
        set_coupon_active("OLD", False)
        assert redeem_coupon("user_a", "OLD", now).reason == RedemptionFailure.INACTIVE

    def test_expired(self, now):
        create_coupon("LATE", 10, expires_at=now - timedelta(minutes=1))
        assert redeem_coupon("user_a", "LATE", now).reason == RedemptionFailure.EXPIRED

    def test_not_yet_expired(self, now):
        create_coupon("SOON", 10, expires_at=now + timedelta(days=1))
        assert redeem_coupon("user_a", "SOON", now).success is True

    def test_exhausted(self, now):
        create_coupon("LIMITED", 10, max_redemptions=2)
        assert redeem_coupon("user_a", "LIMITED", now).success is True
        assert redeem_coupon("user_b", "LIMITED", now).success is True
        third = redeem_coupon("user_c", "LIMITED", now)
        assert third.reason == RedemptionFailure.EXHAUSTED
        assert get_credit_balance("user_c").balance == 0
        assert _redemption_count("LIMITED") == 2

    def test_balances_stack_across_coupons(self, now):
        create_coupon("ONE", 10)
        create_coupon("TWO", 15)
        redeem_coupon("user_a", "ONE", now)
        result = redeem_coupon("user_a", "TWO", now)
        assert result.new_balance == 25


class TestRedeemRoute:
    def test_success_then_conflict(self, client, user_headers):
        create_coupon("WELCOME30", 30)
        headers = user_headers("user_route")

        first = client.post("/api/coupons/redeem", json={"code": "welcome30"}, headers=headers)
        assert first.status_code == 200
        assert first.json()["minutes_added"] == 30

        second = client.post("/api/coupons/redeem", json={"code": "WELCOME30"}, headers=headers)
        assert second.status_code == 409
        assert second.json()["reason"] == "already_redeemed"
        assert second.json()["new_balance"] == 30

    def test_invalid_code_is_bad_request(self, client, user_headers):
        response = client.post("/api/coupons/redeem", json={"code": "MISSING"}, headers=user_headers())
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_code"

    def test_requires_authentication(self, client):
        response = client.post("/api/coupons/redeem", json={"code": "ANY"})
        assert response.status_code == 401
