"""
tests/test_notifications.py — Notification Mapping, Sink & Emitter
===================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from scorekeeper.database.models import Notification
from scorekeeper.engine.events import BadgeView, DispatchResult, Event, TaskProgressView
from scorekeeper.engine.milestones import MilestoneAward
from scorekeeper.engine.notifications import NotificationIntent, notifications_for
from scorekeeper.engine.streaks import StreakOutcome
from scorekeeper.services.notification_service import NotificationEmitter


def _types(intents):
    return [(i.user_id, i.notification_type) for i in intents]


# ---------------------------------------------------------------------------
# Pure mapping
# ---------------------------------------------------------------------------
class TestMapping:
    def _login(self, streak, **extras):
        result = DispatchResult(True, "login_success", streak=streak)
        return notifications_for(Event("login_success", 1), result, extras)

    def test_streak_milestone(self):
        intents = self._login(StreakOutcome(7, 7, is_new_milestone=True, bonus_points=10))
        assert _types(intents) == [(1, "streak_milestone")]
        assert intents[0].params == {"streak": 7, "bonus": 10}

    def test_streak_continued(self):
        assert _types(self._login(StreakOutcome(3, 3))) == [(1, "streak_continued")]

    def test_first_day_is_silent(self):
        assert self._login(StreakOutcome(1, 1)) == []

    def test_grace_used(self):
        intents = self._login(StreakOutcome(4, 4, grace_used=True), grace_remaining=1)
        assert _types(intents) == [(1, "grace_used"), (1, "streak_continued")]
        assert intents[0].params == {"grace_remaining": 1}

    def test_streak_broken(self):
        assert _types(self._login(StreakOutcome(1, 5, broken_from=5))) == [(1, "streak_broken")]

    def test_unchanged_streak(self):
        assert self._login(StreakOutcome(3, 3, unchanged=True)) == []

    def test_follow_notifies_both_sides(self):
        event = Event("follow_accepted", 2, context={"follower_id": 1, "followed_id": 2})
        intents = notifications_for(event, DispatchResult(True, "follow_accepted"))
        assert _types(intents) == [(1, "follow_accepted"), (2, "new_follower")]
        assert intents[1].actor_id == 1

    def test_highfive(self):
        event = Event("highfive_sent", 1, context={"target_user_id": 7})
        intents = notifications_for(event, DispatchResult(True, "highfive_sent"))
        assert _types(intents) == [(7, "highfive_received")]

    def test_self_notification_dropped(self):
        event = Event("highfive_sent", 1, context={"target_user_id": 1})
        assert notifications_for(event, DispatchResult(True, "highfive_sent")) == []

    def test_comment_reply_wins_over_content_author(self):
        event = Event("comment_created", 1, "comment", "c1")
        extras = {"parent_author_id": 4, "content_author_id": 5, "entity_title": "Oats"}
        intents = notifications_for(event, DispatchResult(True, "comment_created"), extras)
        assert _types(intents) == [(4, "comment_reply")]

    def test_comment_on_content(self):
        event = Event("comment_created", 1, "comment", "c1")
        extras = {"content_author_id": 5, "entity_title": "Oats"}
        intents = notifications_for(event, DispatchResult(True, "comment_created"), extras)
        assert _types(intents) == [(5, "comment_on_content")]
        assert intents[0].params["entity_title"] == "Oats"

    def test_comment_liked_with_milestone(self):
        event = Event("comment_liked", 1, "comment", "c1")
        milestone = MilestoneAward("comment_likes", "c1", 10, 2, awarded_to=5)
        result = DispatchResult(True, "comment_liked", milestone=milestone)
        intents = notifications_for(event, result, {"comment_author_id": 5})
        assert _types(intents) == [(5, "comment_liked"), (5, "comment_like_milestone")]
        assert intents[1].params == {"like_count": 10, "points": 2}

    def test_content_completed_requires_points(self):
        event = Event("exercise_completed", 1, "exercise", "42")
        earned = DispatchResult(True, "exercise_completed", points_earned=20)
        assert _types(notifications_for(event, earned)) == [(1, "content_completed")]
        assert notifications_for(event, DispatchResult(True, "exercise_completed")) == []

    def test_badge_and_task_notifications(self):
        badge = BadgeView("motivator", "Motivator", "social", "bronze", datetime(2026, 3, 11, tzinfo=UTC))
        task = TaskProgressView("daily_water", "Drink your water", "daily", "2026-03-11", 1, 1,
                                "completed", just_completed=True, reward_points=5)
        result = DispatchResult(True, "water_goal_reached", badge=badge, tasks=[task])
        intents = notifications_for(Event("water_goal_reached", 1), result)
        assert _types(intents) == [(1, "badge_earned"), (1, "task_completed")]

    def test_unmapped_event(self):
        assert notifications_for(Event("profile_info_updated", 1), DispatchResult(True, "x")) == []


# ---------------------------------------------------------------------------
# Database sink
# ---------------------------------------------------------------------------
class TestNotificationService:
    def test_create_renders_template_and_actor(self, app, identity, db_session):
        identity.names[2] = "Ayşe"
        notification_id = app.notifications.create(
            1, "highfive_received", {"actor_id": 2, "entity_type": "user", "entity_id": 2},
        )
        row = db_session.get(Notification, notification_id)
        assert row.body == "Ayşe sent you a high five."
        assert row.category == "social"
        assert row.actor_id == 2
        assert row.entity_id == "2"
        assert row.expires_at is not None

    def test_actor_name_fallback(self, app):
        app.notifications.create(1, "new_follower", {"actor_id": 9})
        assert app.notifications.list_for_user(1)[0]["body"] == "User 9 started following you."

    def test_unknown_template_skipped(self, app):
        assert app.notifications.create(1, "mystery", {}) is None

    def test_duplicate_same_day_suppressed(self, app, clock):
        params = {"actor_id": 2, "entity_type": "user", "entity_id": 2}
        assert app.notifications.create(1, "highfive_received", params) is not None
        assert app.notifications.create(1, "highfive_received", params) is None
        other = {"actor_id": 3, "entity_type": "user", "entity_id": 3}
        assert app.notifications.create(1, "highfive_received", other) is not None

        clock.advance(days=1)
        assert app.notifications.create(1, "highfive_received", params) is not None

    def test_non_scalar_params_not_stored(self, app, db_session):
        notification_id = app.notifications.create(
            1, "streak_milestone", {"streak": 7, "bonus": 10, "detail": {"x": 1}},
        )
        assert db_session.get(Notification, notification_id).params == {"streak": 7, "bonus": 10}

    def test_list_and_mark_read(self, app):
        first = app.notifications.create(1, "streak_continued", {"streak": 2})
        app.notifications.create(1, "grace_used", {"grace_remaining": 1})

        listing = app.notifications.list_for_user(1)
        assert [n["type"] for n in listing] == ["grace_used", "streak_continued"]

        assert app.notifications.mark_read(1, [first]) == 1
        assert [n["type"] for n in app.notifications.list_for_user(1, unread_only=True)] == ["grace_used"]
        assert app.notifications.mark_read(1) == 1
        assert app.notifications.list_for_user(1, unread_only=True) == []


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------
class TestEmitter:
    def test_routing_fields_passed_in_params(self):
        sink = MagicMock()
        emitter = NotificationEmitter(sink)
        intent = NotificationIntent(7, "highfive_received", {}, actor_id=1,
                                    entity_type="user", entity_id="1")
        assert emitter.send(intent)
        sink.create.assert_called_once_with(
            7, "highfive_received", {"actor_id": 1, "entity_type": "user", "entity_id": "1"},
        )

    def test_sink_failure_is_swallowed(self, caplog):
        sink = MagicMock()
        sink.create.side_effect = RuntimeError("push service down")
        emitter = NotificationEmitter(sink)
        event = Event("follow_accepted", 2, context={"follower_id": 1, "followed_id": 2})

        with caplog.at_level("ERROR"):
            assert emitter.emit(event, DispatchResult(True, "follow_accepted")) == 0
        assert sink.create.call_count == 2
        assert "Notification follow_accepted to user 1 failed" in caplog.text

    @pytest.mark.parametrize("failures, expected", [(0, 2), (1, 1)])
    def test_emit_counts_successes(self, failures, expected):
        sink = MagicMock()
        sink.create.side_effect = [RuntimeError("boom")] * failures + [None] * (2 - failures)
        event = Event("follow_accepted", 2, context={"follower_id": 1, "followed_id": 2})
        assert NotificationEmitter(sink).emit(event, DispatchResult(True, "follow_accepted")) == expected
