"""
tests/test_streaks.py — Streak Transitions & Bonuses
=====================================================
"""

from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy import select

from scorekeeper.constants import DAILY_LOGIN_STREAK
from scorekeeper.database.models import LedgerEntry
from scorekeeper.engine.streaks import StreakState, advance, crossed_bonus

DAY = date(2026, 3, 11)
SCHEDULE = {7: 10, 14: 25, 30: 50}


class TestAdvance:
    def test_first_activity_starts_at_one(self):
        state, grace_used, broken = advance(StreakState(grace_remaining=2), DAY)
        assert state.current_streak == 1
        assert state.longest_streak == 1
        assert state.last_activity_date == DAY
        assert not grace_used
        assert broken is None

    def test_same_day_is_noop(self):
        before = StreakState(3, 5, DAY, 2)
        after, _, _ = advance(before, DAY)
        assert after == before

    def test_next_day_continues(self):
        after, _, _ = advance(StreakState(3, 5, DAY, 2), DAY + timedelta(days=1))
        assert after.current_streak == 4
        assert after.longest_streak == 5

    def test_one_missed_day_spends_grace(self):
        after, grace_used, broken = advance(StreakState(3, 3, DAY, 2), DAY + timedelta(days=2))
        assert after.current_streak == 4
        assert after.grace_remaining == 1
        assert grace_used
        assert broken is None

    def test_missed_day_without_grace_breaks(self):
        after, grace_used, broken = advance(StreakState(3, 3, DAY, 0), DAY + timedelta(days=2))
        assert after.current_streak == 1
        assert after.longest_streak == 3
        assert not grace_used
        assert broken == 3

    def test_long_gap_breaks_even_with_grace(self):
        after, _, broken = advance(StreakState(9, 9, DAY, 2), DAY + timedelta(days=5))
        assert after.current_streak == 1
        assert after.grace_remaining == 2
        assert broken == 9


class TestCrossedBonus:
    def test_exact_threshold(self):
        assert crossed_bonus(6, 7, SCHEDULE) == (7, 10)

    def test_no_threshold(self):
        assert crossed_bonus(7, 8, SCHEDULE) is None

    def test_highest_of_several(self):
        assert crossed_bonus(6, 14, SCHEDULE) == (14, 25)

    def test_already_past(self):
        assert crossed_bonus(30, 31, SCHEDULE) is None


class TestStreakTracker:
    def _login_days(self, app, clock, days: int, user_id: int = 1):
        outcomes = []
        for _ in range(days):
            outcomes.append(app.streaks.record_activity(user_id, DAILY_LOGIN_STREAK))
            clock.advance(days=1)
        return outcomes

    def test_seven_day_bonus_paid_once(self, app, clock, db_session):
        outcomes = self._login_days(app, clock, 7)
        assert [o.current_streak for o in outcomes] == [1, 2, 3, 4, 5, 6, 7]
        assert outcomes[-1].is_new_milestone
        assert outcomes[-1].bonus_points == 10
        assert not any(o.is_new_milestone for o in outcomes[:-1])

        keys = db_session.scalars(
            select(LedgerEntry.idempotency_key).where(LedgerEntry.event_type == "streak_milestone")
        ).all()
        assert len(keys) == 1
        assert app.score.get_scores(1).total_score == 10

    def test_same_day_repeat_unchanged(self, app):
        first = app.streaks.record_activity(1, DAILY_LOGIN_STREAK)
        again = app.streaks.record_activity(1, DAILY_LOGIN_STREAK)
        assert first.current_streak == 1
        assert again.unchanged
        assert again.current_streak == 1

    def test_grace_day_keeps_streak(self, app, clock):
        self._login_days(app, clock, 3)
        clock.advance(days=1)  # skip one day
        outcome = app.streaks.record_activity(1, DAILY_LOGIN_STREAK)
        assert outcome.grace_used
        assert outcome.current_streak == 4
        assert app.streaks.get_streak(1, DAILY_LOGIN_STREAK).grace_remaining == 1

    def test_break_reports_previous_length(self, app, clock):
        self._login_days(app, clock, 3)
        clock.advance(days=4)
        outcome = app.streaks.record_activity(1, DAILY_LOGIN_STREAK)
        assert outcome.current_streak == 1
        assert outcome.broken_from == 3
        assert outcome.longest_streak == 3

    def test_reset_weekly_grace(self, app, clock):
        self._login_days(app, clock, 2)
        clock.advance(days=1)
        app.streaks.record_activity(1, DAILY_LOGIN_STREAK)
        assert app.streaks.get_streak(1, DAILY_LOGIN_STREAK).grace_remaining == 1

        assert app.streaks.reset_weekly_grace() == 1
        assert app.streaks.get_streak(1, DAILY_LOGIN_STREAK).grace_remaining == 2

    def test_unknown_user_has_default_state(self, app):
        state = app.streaks.get_streak(404, DAILY_LOGIN_STREAK)
        assert state.current_streak == 0
        assert state.grace_remaining == 2
