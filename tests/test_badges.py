"""
tests/test_badges.py — Badge Conditions & Awarding
===================================================
Pure handler tests run against an in-memory history; service tests run
against SQLite.
"""

from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy import func, select

from scorekeeper.database.models import EventRecord
from scorekeeper.engine.badges import evaluate, relevant_badges
from scorekeeper.engine.events import Event


class FakeHistory:
    """Canned answers for every BadgeHistory query."""

    def __init__(self, **answers):
        self.answers = answers

    def count_events(self, event_types, context_filter=None):
        return self.answers.get("count_events", 0)

    def count_unique_days(self, event_type):
        return self.answers.get("count_unique_days", 0)

    def count_in_period(self, event_type, period_type):
        return self.answers.get("count_in_period", 0)

    def event_weeks(self, event_type):
        return self.answers.get("event_weeks", [])

    def active_days(self, event_type, limit=30):
        return self.answers.get("active_days", [])[:limit]

    def current_streak(self, streak_type):
        return self.answers.get("current_streak", 0)

    def circle_task_shares(self):
        return self.answers.get("circle_task_shares", [])

    def hero_shares(self, window_hours):
        return self.answers.get("hero_shares", [])

    def count_unique_counterparts(self, event_types):
        return self.answers.get("count_unique_counterparts", 0)


MON = date(2026, 3, 9)


class TestHandlers:
    def test_count_is_capped_at_goal(self, rules):
        assert evaluate(rules.badge("century"), FakeHistory(count_events=40)) == 40
        assert evaluate(rules.badge("century"), FakeHistory(count_events=140)) == 100

    def test_streak(self, rules):
        assert evaluate(rules.badge("consistency_master"), FakeHistory(current_streak=12)) == 12

    def test_consecutive_weeks_counts_newest_run(self, rules):
        weeks = [MON, MON - timedelta(weeks=1), MON - timedelta(weeks=2), MON - timedelta(weeks=4)]
        assert evaluate(rules.badge("weekly_champion"), FakeHistory(event_weeks=weeks)) == 3

    def test_consecutive_weeks_empty(self, rules):
        assert evaluate(rules.badge("weekly_champion"), FakeHistory()) == 0

    def test_comeback_after_long_gap(self, rules):
        days = [date(2026, 3, 11), date(2026, 3, 10), date(2026, 3, 9), date(2026, 2, 28)]
        assert evaluate(rules.badge("comeback_kid"), FakeHistory(active_days=days)) == 3

    def test_comeback_without_gap(self, rules):
        days = [date(2026, 3, 11) - timedelta(days=n) for n in range(10)]
        assert evaluate(rules.badge("comeback_kid"), FakeHistory(active_days=days)) == 0

    def test_comeback_short_gap_resets(self, rules):
        days = [date(2026, 3, 11), date(2026, 3, 8), date(2026, 2, 20)]
        assert evaluate(rules.badge("comeback_kid"), FakeHistory(active_days=days)) == 0

    def test_circle_contribution_threshold(self, rules):
        history = FakeHistory(circle_task_shares=[5.0, 10.0, 40.0])
        assert evaluate(rules.badge("team_player"), history) == 2

    def test_circle_hero(self, rules):
        assert evaluate(rules.badge("circle_hero"), FakeHistory(hero_shares=[19.9])) == 0
        assert evaluate(rules.badge("circle_hero"), FakeHistory(hero_shares=[25.0])) == 1

    def test_unique_users(self, rules):
        assert evaluate(rules.badge("motivator"), FakeHistory(count_unique_counterparts=4)) == 4

    def test_count_in_period(self, rules):
        assert evaluate(rules.badge("monthly_grinder"), FakeHistory(count_in_period=7)) == 7

    def test_relevant_badges_skip_earned(self, rules):
        found = relevant_badges(rules.badges, ["highfive_sent"], earned=set())
        assert [b.slug for b in found] == ["motivator"]
        assert relevant_badges(rules.badges, ["highfive_sent"], earned={"motivator"}) == []


class TestBadgeRuleEngine:
    def _log(self, app, user_id, event_type, **context):
        app.score.log_only(Event(event_type, user_id, context=context))

    def test_badge_earned_exactly_once(self, app, db_session):
        for target in range(10, 20):
            self._log(app, 1, "highfive_sent", target_user_id=target)

        view = app.badges.process_event(1, "highfive_sent")
        assert view is not None
        assert view.slug == "motivator"
        assert view.tier == "bronze"
        assert app.badges.process_event(1, "highfive_sent") is None

        earned_rows = db_session.scalar(
            select(func.count()).select_from(EventRecord)
            .where(EventRecord.event_type == "badge_earned")
        )
        assert earned_rows == 1

    def test_progress_recorded_before_goal(self, app):
        for target in (10, 11, 11):
            self._log(app, 1, "comment_created", target_user_id=target)
        assert app.badges.process_event(1, ["comment_created"]) is None

        motivator = next(b for b in app.badges.get_user_badges(1) if b["slug"] == "motivator")
        assert motivator["progress"] == 2
        assert motivator["goal"] == 10
        assert not motivator["earned"]

    def test_context_filter(self, app):
        for _ in range(3):
            self._log(app, 1, "exercise_completed", time_of_day="morning")
        self._log(app, 1, "exercise_completed", time_of_day="evening")
        app.badges.process_event(1, "exercise_completed")

        early = next(b for b in app.badges.get_user_badges(1) if b["slug"] == "early_bird")
        assert early["progress"] == 3

    def test_unique_days(self, app, clock):
        for _ in range(3):
            self._log(app, 1, "water_goal_reached")
            self._log(app, 1, "water_goal_reached")
            clock.advance(days=1)
        app.badges.process_event(1, "water_goal_reached")
        keeper = next(b for b in app.badges.get_user_badges(1) if b["slug"] == "water_keeper")
        assert keeper["progress"] == 3
        assert keeper["goal"] == 14

    def test_add_progress(self, app):
        assert app.badges.add_progress(1, "weekly_champion", 25) is None
        view = app.badges.add_progress(1, "weekly_champion", 75)
        assert view is not None and view.slug == "weekly_champion"
        assert app.badges.add_progress(1, "weekly_champion", 25) is None

    def test_add_progress_unknown_badge(self, app):
        assert app.badges.add_progress(1, "ghost", 50) is None

    def test_user_badges_listing(self, app):
        listing = app.badges.get_user_badges(1)
        assert len(listing) == len(app.rules.badges)
        assert all(not b["earned"] and b["progress"] == 0 for b in listing)
