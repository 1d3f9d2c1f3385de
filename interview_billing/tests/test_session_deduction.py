"""
Interview sessions: whichever end path fires first charges the minutes,
every later path sees already_deducted.
"""
import random
from datetime import timedelta

import pytest

from interview_billing.core.database import get_db_session
from interview_billing.core.errors import ConflictError, NotFoundError, QuotaExceededError, ValidationError
from interview_billing.features.credits.service import get_credit_balance, grant_credit
from interview_billing.features.sessions.service import (
    deduct_session_minutes,
    end_session,
    find_stale_sessions,
    get_session,
    minutes_for,
    record_heartbeat,
    start_session,
    sweep_stale_sessions,
)
from interview_billing.features.subscriptions.service import transition
from interview_billing.features.usage.service import check_usage, get_available_minutes
from interview_billing.features.users.service import ensure_user_row
from interview_billing.models.session import EndReason, SessionStatus
from interview_billing.models.usage import UsageType


@pytest.mark.parametrize("seconds,minutes", [(0, 0), (1, 1), (59, 1), (60, 1), (61, 2), (900, 15)])
def test_minutes_round_up(seconds, minutes):
    assert minutes_for(seconds) == minutes


class TestStartSession:
    def test_start_counts_an_interview(self, now):
        session = start_session("user_s", now)
        assert session.status == SessionStatus.ACTIVE
        assert session.duration_deducted is False
        assert check_usage("user_s", UsageType.INTERVIEWS_PER_DAY, 1, now).current_usage == 1

    def test_daily_limit_enforced(self, now):
        start_session("user_s", now)
        with pytest.raises(QuotaExceededError) as exc_info:
            start_session("user_s", now)
        assert exc_info.value.usage_type == "interviews_per_day"

    def test_no_minutes_left(self, now):
        transition("user_s", "starter")
        first = start_session("user_s", now)
        end_session("user_s", first.id, duration_seconds=30 * 60, now=now)
        with pytest.raises(QuotaExceededError) as exc_info:
            start_session("user_s", now)
        assert exc_info.value.usage_type == "minutes_per_month"

    def test_credit_lets_session_start(self, now):
        transition("user_s", "starter")
        first = start_session("user_s", now)
        end_session("user_s", first.id, duration_seconds=30 * 60, now=now)
        with get_db_session() as session:
            grant_credit(session, ensure_user_row(session, "user_s"), 10)
        assert start_session("user_s", now).status == SessionStatus.ACTIVE


class TestExactlyOnce:
    def test_explicit_then_emergency(self, now):
        session = start_session("user_e", now)
        first = end_session("user_e", session.id, duration_seconds=90, now=now)
        second = end_session("user_e", session.id, duration_seconds=300, reason=EndReason.TAB_CLOSE, now=now)

        assert first.already_deducted is False
        assert first.minutes == 2
        assert second.already_deducted is True
        assert (second.minutes, second.monthly_deducted, second.credit_deducted) == (2, 2, 0)
        assert get_available_minutes("user_e", now).monthly_used == 2

    def test_repeated_deduct_calls(self, now):
        transition("user_e", "starter")
        session = start_session("user_e", now)
        record_heartbeat("user_e", session.id, 600, now)
        ended = end_session(None, session.id, reason=EndReason.HEARTBEAT_TIMEOUT, now=now)
        results = [ended] + [deduct_session_minutes(session.id, now=now) for _ in range(3)]

        assert [r.already_deducted for r in results] == [False, True, True, True]
        assert all(r.minutes == 10 for r in results)
        assert get_available_minutes("user_e", now).monthly_used == 10
        assert get_session("user_e", session.id).status == SessionStatus.COMPLETED

    def test_deduction_split_is_stored(self, now):
        with get_db_session() as session:
            grant_credit(session, ensure_user_row(session, "user_split"), 20)
        interview = start_session("user_split", now)
        first = end_session("user_split", interview.id, duration_seconds=5 * 60, now=now)
        assert (first.monthly_deducted, first.credit_deducted, first.overage) == (2, 3, 0)

        replay = deduct_session_minutes(interview.id, "user_split", now)
        assert replay.already_deducted is True
        assert (replay.monthly_deducted, replay.credit_deducted) == (2, 3)
        assert get_credit_balance("user_split").balance == 17

    def test_deduct_before_end_is_refused(self, now):
        transition("user_early", "starter")
        interview = start_session("user_early", now)

        with pytest.raises(ConflictError):
            deduct_session_minutes(interview.id, "user_early", now)

        still_open = get_session("user_early", interview.id)
        assert still_open.status == SessionStatus.ACTIVE
        assert still_open.duration_deducted is False

        ended = end_session("user_early", interview.id, duration_seconds=1800, now=now)
        assert ended.already_deducted is False
        assert ended.minutes == 30
        assert get_available_minutes("user_early", now).monthly_used == 30

    @pytest.mark.parametrize("seed", range(6))
    def test_any_order_of_end_paths(self, seed, now):
        rng = random.Random(seed)
        transition("user_order", "professional")
        interview = start_session("user_order", now)
        record_heartbeat("user_order", interview.id, rng.randint(60, 1200), now)

        def retry_deduct():
            try:
                deduct_session_minutes(interview.id, "user_order", now)
            except ConflictError:
                assert get_session("user_order", interview.id).status == SessionStatus.ACTIVE

        calls = [
            lambda: end_session("user_order", interview.id, reason=EndReason.EXPLICIT, now=now),
            lambda: end_session("user_order", interview.id, reason=EndReason.TAB_CLOSE, now=now),
            retry_deduct,
            lambda: sweep_stale_sessions(60, now + timedelta(hours=1)),
        ]
        rng.shuffle(calls)
        for call in calls:
            call()

        charged = get_session("user_order", interview.id)
        assert charged.duration_deducted is True
        assert get_available_minutes("user_order", now).monthly_used == minutes_for(charged.duration_seconds)


class TestHeartbeat:
    def test_duration_never_shrinks(self, now):
        session = start_session("user_h", now)
        record_heartbeat("user_h", session.id, 120, now + timedelta(minutes=2))
        updated = record_heartbeat("user_h", session.id, 60, now + timedelta(minutes=3))
        assert updated.duration_seconds == 120
        assert updated.last_heartbeat_at == now + timedelta(minutes=3)

    def test_heartbeat_after_end_is_ignored(self, now):
        session = start_session("user_h", now)
        end_session("user_h", session.id, duration_seconds=60, now=now)
        after = record_heartbeat("user_h", session.id, 600, now + timedelta(minutes=10))
        assert after.duration_seconds == 60
        assert after.status == SessionStatus.COMPLETED

    def test_negative_duration_rejected(self, now):
        session = start_session("user_h", now)
        with pytest.raises(ValidationError):
            record_heartbeat("user_h", session.id, -5, now)


class TestOwnership:
    def test_unknown_session(self, now):
        with pytest.raises(NotFoundError):
            deduct_session_minutes("missing-session", now=now)

    def test_other_users_session_is_not_found(self, now):
        session = start_session("user_owner", now)
        ensure = start_session("user_intruder", now)
        assert ensure.id != session.id
        with pytest.raises(NotFoundError):
            end_session("user_intruder", session.id, duration_seconds=60, now=now)
        with pytest.raises(NotFoundError):
            get_session("user_nobody", session.id)


class TestSweeper:
    def test_stale_sessions_are_ended_at_last_heartbeat(self, now):
        transition("user_stale", "professional")
        interview = start_session("user_stale", now)
        record_heartbeat("user_stale", interview.id, 200, now + timedelta(seconds=200))

        later = now + timedelta(minutes=30)
        assert find_stale_sessions(120, later) == [interview.id]

        results = sweep_stale_sessions(120, later)
        assert len(results) == 1
        assert results[0].minutes == 4

        ended = get_session("user_stale", interview.id)
        assert ended.end_reason == EndReason.HEARTBEAT_TIMEOUT
        assert find_stale_sessions(120, later) == []

    def test_live_sessions_left_alone(self, now):
        interview = start_session("user_live", now)
        record_heartbeat("user_live", interview.id, 30, now + timedelta(seconds=30))
        assert sweep_stale_sessions(120, now + timedelta(seconds=60)) == []
        assert get_session("user_live", interview.id).status == SessionStatus.ACTIVE


class TestSessionRoutes:
    def test_lifecycle(self, client, user_headers):
        headers = user_headers("user_route")
        started = client.post("/api/sessions", headers=headers)
        assert started.status_code == 201
        session_id = started.json()["id"]

        beat = client.post(f"/api/sessions/{session_id}/heartbeat", json={"duration_seconds": 45}, headers=headers)
        assert beat.status_code == 200
        assert beat.json()["duration_seconds"] == 45

        ended = client.post(f"/api/sessions/{session_id}/end", json={"duration_seconds": 45}, headers=headers)
        assert ended.status_code == 200
        assert ended.json()["already_deducted"] is False
        assert ended.json()["minutes"] == 1

        beacon = client.post(
            "/api/sessions/emergency-end",
            json={"session_id": session_id, "duration_seconds": 45},
            headers=headers,
        )
        assert beacon.status_code == 200
        assert beacon.json()["already_deducted"] is True

    def test_second_session_same_day_is_forbidden(self, client, user_headers):
        headers = user_headers("user_route")
        client.post("/api/sessions", headers=headers)
        response = client.post("/api/sessions", headers=headers)
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "quota_exceeded"
        assert error["usage_type"] == "interviews_per_day"
        assert error["limit"] == 1

    def test_deduct_route_waits_for_end(self, client, user_headers):
        headers = user_headers("user_route")
        session_id = client.post("/api/sessions", headers=headers).json()["id"]

        early = client.post(f"/api/sessions/{session_id}/deduct", headers=headers)
        assert early.status_code == 409
        assert early.json()["error"]["code"] == "conflict"

        ended = client.post(f"/api/sessions/{session_id}/end", json={"duration_seconds": 1800}, headers=headers)
        assert ended.json()["already_deducted"] is False
        assert ended.json()["minutes"] == 30

        retry = client.post(f"/api/sessions/{session_id}/deduct", headers=headers)
        assert retry.status_code == 200
        assert retry.json()["already_deducted"] is True
        assert retry.json()["minutes"] == 30

    def test_deduct_unknown_session(self, client, user_headers):
        response = client.post("/api/sessions/nope/deduct", headers=user_headers())
        assert response.status_code == 404
