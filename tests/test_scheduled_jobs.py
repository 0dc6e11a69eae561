"""
tests/test_scheduled_jobs.py — Snapshots, Retention, Reconciliation & Runner
=============================================================================
"""

from __future__ import annotations

import asyncio
import warnings
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SADeprecationWarning

from scorekeeper.database.engine import get_session
from scorekeeper.database.models import EventRecord, LedgerEntry, Notification, UserScore
from scorekeeper.engine.events import Event
from scorekeeper.services.reconciliation_service import reconcile_scores
from scorekeeper.services.retention_service import get_retention_stats, run_retention_cleanup
from scorekeeper.services.scheduled_jobs import (
    create_snapshot,
    get_snapshots,
    send_profile_view_digests,
    send_weekly_rankings,
)

from conftest import START


def _earn(app, user_id, points, key, event_type="exercise_completed"):
    event = Event(event_type, user_id, timestamp=app.window.now())
    return app.score.award(event, points, key)


@pytest.fixture
def week_of_points(app):
    """Wednesday of 2026-W11: user 2 on 20 points, users 1 and 3 tied on 10."""
    _earn(app, 1, 10, "k1")
    app.score.log_only(Event("login_success", 1, timestamp=app.window.now()))
    _earn(app, 2, 10, "k2a")
    _earn(app, 2, 10, "k2b")
    _earn(app, 3, 10, "k3")
    return app


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
class TestSnapshots:
    def test_weekly_snapshot_ranks_last_week(self, week_of_points, db_engine, clock):
        app = week_of_points
        clock.advance(days=5)  # Monday 2026-03-16

        assert create_snapshot(db_engine, app.window, "weekly") == 3
        snaps = get_snapshots(db_engine, "weekly", "2026-W11")
        assert [(s["user_id"], s["score"], s["rank"]) for s in snaps] == [
            (2, 20, 1), (1, 10, 2), (3, 10, 3),
        ]
        assert snaps[1]["event_counts"] == {"exercise_completed": 1, "login_success": 1}

    def test_snapshot_rerun_writes_nothing(self, week_of_points, db_engine, clock):
        clock.advance(days=5)
        create_snapshot(db_engine, week_of_points.window, "weekly")
        assert create_snapshot(db_engine, week_of_points.window, "weekly") == 0
        assert len(get_snapshots(db_engine, "weekly", "2026-W11")) == 3

    def test_daily_snapshot_has_no_rank(self, week_of_points, db_engine, clock):
        clock.advance(days=1)
        assert create_snapshot(db_engine, week_of_points.window, "daily") == 3
        snaps = get_snapshots(db_engine, "daily", "2026-03-11")
        assert {s["rank"] for s in snaps} == {None}

    def test_current_period_is_not_snapshotted(self, week_of_points, db_engine):
        assert create_snapshot(db_engine, week_of_points.window, "weekly") == 0
        assert create_snapshot(db_engine, week_of_points.window, "monthly") == 0


class TestDigests:
    def test_weekly_rankings_respect_top(self, week_of_points, db_engine, clock):
        clock.advance(days=5)
        create_snapshot(db_engine, week_of_points.window, "weekly")
        sink = MagicMock()

        assert send_weekly_rankings(db_engine, week_of_points.window, sink, top=2) == 2
        sink.create.assert_any_call(2, "weekly_ranking", {
            "rank": 1, "score": 20, "entity_type": "ranking", "entity_id": "2026-W11",
        })
        assert [c.args[0] for c in sink.create.call_args_list] == [2, 1]

    def test_weekly_ranking_failure_does_not_stop_others(self, week_of_points, db_engine, clock):
        clock.advance(days=5)
        create_snapshot(db_engine, week_of_points.window, "weekly")
        sink = MagicMock()
        sink.create.side_effect = [RuntimeError("down"), None, None]
        assert send_weekly_rankings(db_engine, week_of_points.window, sink) == 2

    def test_profile_view_digest_skips_zero(self):
        sink = MagicMock()
        assert send_profile_view_digests({1: 5, 2: 0}, sink, "2026-W11") == 1
        sink.create.assert_called_once_with(1, "profile_view_milestone", {
            "view_count": 5, "entity_type": "profile_views", "entity_id": "2026-W11",
        })


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------
class TestRetention:
    def test_events_kept_inside_window(self, app, db_engine):
        _earn(app, 1, 10, "k1")
        result = run_retention_cleanup(db_engine, 90, now=START + timedelta(days=89))
        assert result == {"events_deleted": 0, "notifications_deleted": 0}

    def test_old_events_deleted_in_batches_ledger_kept(self, app, db_engine, db_session):
        _earn(app, 1, 10, "k1")
        app.score.log_only(Event("login_success", 1, timestamp=START))
        app.score.log_only(Event("login_success", 2, timestamp=START))

        result = run_retention_cleanup(db_engine, 90, now=START + timedelta(days=91), batch_size=1)
        assert result["events_deleted"] == 3
        assert db_session.scalar(select(func.count()).select_from(EventRecord)) == 0
        assert db_session.scalar(select(func.count()).select_from(LedgerEntry)) == 1
        assert app.score.get_scores(1).total_score == 10

    def test_expired_notifications_deleted(self, app, db_engine, db_session):
        app.notifications.create(1, "streak_continued", {"streak": 2})

        assert run_retention_cleanup(db_engine, now=START + timedelta(days=1))["notifications_deleted"] == 0
        assert run_retention_cleanup(db_engine, now=START + timedelta(days=5))["notifications_deleted"] == 1
        assert db_session.scalar(select(func.count()).select_from(Notification)) == 0

    def test_stats(self, app, db_engine):
        assert get_retention_stats(db_engine) == {
            "total_events": 0, "oldest_event": None, "newest_event": None,
            "unread_notifications": 0,
        }
        _earn(app, 1, 10, "k1")
        app.notifications.create(1, "streak_continued", {"streak": 2})
        stats = get_retention_stats(db_engine)
        assert stats["total_events"] == 1
        assert stats["oldest_event"] is not None
        assert stats["unread_notifications"] == 1


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
class TestReconciliation:
    """Totals against the ledger; no deprecated Result APIs on the way."""

    def _set_total(self, engine, user_id, total):
        with get_session(engine) as session:
            session.execute(
                update(UserScore).where(UserScore.user_id == user_id).values(total_score=total)
            )

    def test_all_totals_match(self, app, db_engine):
        _earn(app, 1, 10, "k1")
        _earn(app, 2, 20, "k2")
        with warnings.catch_warnings():
            warnings.simplefilter("error", SADeprecationWarning)
            result = reconcile_scores(db_engine)
        assert result["checked"] == 2
        assert result["corrected"] == 0
        assert result["corrections"] == []
        assert "timestamp" in result

    def test_drift_reported_without_fix(self, app, db_engine):
        _earn(app, 1, 10, "k1")
        self._set_total(db_engine, 1, 99)

        result = reconcile_scores(db_engine, fix=False)
        assert result["corrected"] == 0
        assert result["corrections"] == [{"user_id": 1, "stored": 99, "actual": 10, "diff": -89}]
        assert app.score.get_scores(1).total_score == 99

    def test_drift_corrected(self, app, db_engine):
        _earn(app, 1, 10, "k1")
        self._set_total(db_engine, 1, 99)

        assert reconcile_scores(db_engine)["corrected"] == 1
        assert app.score.get_scores(1).total_score == 10

    def test_missing_score_row_inserted(self, app, db_engine, db_session):
        _earn(app, 2, 20, "k2")
        with get_session(db_engine) as session:
            session.execute(delete(UserScore).where(UserScore.user_id == 2))

        result = reconcile_scores(db_engine)
        assert result["corrections"][0]["stored"] is None
        assert db_session.get(UserScore, 2).total_score == 20

    def test_negative_ledger_sum_expects_zero(self, app, db_engine):
        _earn(app, 4, -5, "k4", event_type="content_removed")
        assert app.score.get_scores(4).total_score == 0
        assert reconcile_scores(db_engine)["corrections"] == []


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
class TestScheduledJobs:
    def test_daily_run(self, week_of_points, clock):
        clock.advance(days=1)
        results = week_of_points.jobs.run_daily()
        assert set(results) == {"daily_snapshot", "expire_daily_tasks", "retention"}
        assert results["daily_snapshot"] == 3
        assert results["retention"] == {"events_deleted": 0, "notifications_deleted": 0}

    def test_weekly_run(self, week_of_points, clock):
        clock.advance(days=5)
        results = week_of_points.jobs.run_weekly()
        assert list(results) == [
            "weekly_snapshot", "weekly_rankings", "reset_grace",
            "expire_weekly_tasks", "expire_circle_tasks", "reconciliation",
        ]
        assert results["weekly_snapshot"] == 3
        assert results["weekly_rankings"] == 3
        assert results["reconciliation"]["corrected"] == 0

    def test_weekly_run_without_sink_skips_rankings(self, week_of_points, clock):
        jobs = week_of_points.jobs
        jobs.sink = None
        clock.advance(days=5)
        assert "weekly_rankings" not in jobs.run_weekly()

    def test_failing_job_is_isolated(self, app, monkeypatch, caplog):
        def boom(period_type):
            raise RuntimeError("db down")

        monkeypatch.setattr(app.tasks, "expire_old_tasks", boom)
        with caplog.at_level("ERROR"):
            results = app.jobs.run_monthly()
        assert results["expire_monthly_tasks"] is None
        assert results["monthly_snapshot"] == 0
        assert "Scheduled job expire_monthly_tasks failed" in caplog.text

    def test_run_async(self, app):
        results = asyncio.run(app.jobs.run_async("monthly"))
        assert set(results) == {"monthly_snapshot", "expire_monthly_tasks"}

    def test_run_async_unknown_cadence(self, app):
        with pytest.raises(ValueError, match="Unknown cadence"):
            asyncio.run(app.jobs.run_async("hourly"))
