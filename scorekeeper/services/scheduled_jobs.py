"""
scorekeeper.services.scheduled_jobs — Periodic Job Contracts
=============================================================

The engine ships the job bodies; the host decides when they run (cron,
a worker loop, a management command).  Expected cadence:

- **daily** (shortly after local midnight) — daily snapshot, expire
  yesterday's daily tasks, journal retention cleanup.
- **weekly** (Monday) — weekly snapshot with ranks, ranking
  notifications, streak grace reset, expire last week's tasks and circle
  tasks, score reconciliation.
- **monthly** (1st) — monthly snapshot, expire last month's tasks.

Each job inside a run is isolated: a failure is logged and the remaining
jobs still run.  Async hosts call :meth:`ScheduledJobs.run_async`, which
goes through :func:`~scorekeeper.database.engine.run_db`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError

from scorekeeper.database.engine import get_session, run_db
from scorekeeper.database.models import EventRecord, PeriodType, ScoreSnapshot
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.services.reconciliation_service import reconcile_scores
from scorekeeper.services.retention_service import DEFAULT_RETENTION_DAYS, run_retention_cleanup

if TYPE_CHECKING:
    from scorekeeper.collaborators import NotificationSink
    from scorekeeper.services.circle_service import CircleContributionTracker
    from scorekeeper.services.streak_service import StreakTracker
    from scorekeeper.services.task_service import TaskProgressTracker

logger = logging.getLogger(__name__)

# Profile view counts that earn a digest notification
PROFILE_VIEW_MIN = 1


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
def create_snapshot(engine: Engine, window: TimeWindow, period_type: str) -> int:
    """Snapshot every active user's score for the last *closed* period.

    Scores are the sum of journalled points inside the period; weekly
    snapshots also get a rank (1 = highest, ties ordered by user id).
    Re-running for the same period inserts nothing.

    Returns the number of snapshots written.
    """
    period = window.previous_period(period_type)
    with get_session(engine) as session:
        rows = session.execute(
            select(
                EventRecord.user_id,
                EventRecord.event_type,
                func.count().label("cnt"),
                func.coalesce(func.sum(EventRecord.points), 0).label("pts"),
            )
            .where(EventRecord.event_day >= period.start, EventRecord.event_day <= period.end)
            .group_by(EventRecord.user_id, EventRecord.event_type)
        ).all()

        scores: dict[int, int] = defaultdict(int)
        counts: dict[int, dict[str, int]] = defaultdict(dict)
        for row in rows:
            scores[row.user_id] += int(row.pts)
            counts[row.user_id][row.event_type] = int(row.cnt)

        ranks: dict[int, int] = {}
        if period_type == PeriodType.WEEKLY:
            ordered = sorted(scores, key=lambda uid: (-scores[uid], uid))
            ranks = {uid: pos for pos, uid in enumerate(ordered, start=1)}

        written = 0
        for user_id, score in scores.items():
            try:
                with session.begin_nested():
                    session.add(ScoreSnapshot(
                        user_id=user_id,
                        period_type=period_type,
                        period_key=period.key,
                        score=score,
                        rank_position=ranks.get(user_id),
                        event_counts=counts[user_id],
                    ))
                    session.flush()
                written += 1
            except IntegrityError:
                logger.debug("Snapshot %s/%s for user %s exists", period_type, period.key, user_id)

    logger.info("Snapshot %s %s: %d users", period_type, period.key, written)
    return written


def get_snapshots(engine: Engine, period_type: str, period_key: str) -> list[dict]:
    """Snapshots of one period, best rank (or score) first."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(ScoreSnapshot)
            .where(ScoreSnapshot.period_type == period_type, ScoreSnapshot.period_key == period_key)
            .order_by(ScoreSnapshot.score.desc(), ScoreSnapshot.user_id)
        ).all()
        return [
            {"user_id": r.user_id, "score": r.score, "rank": r.rank_position,
             "event_counts": dict(r.event_counts or {})}
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Digest notifications
# ---------------------------------------------------------------------------
def send_weekly_rankings(
    engine: Engine, window: TimeWindow, sink: NotificationSink, top: int | None = None,
) -> int:
    """Notify ranked users of last week's position.  Returns notifications sent."""
    period = window.previous_period("weekly")
    sent = 0
    for snap in get_snapshots(engine, "weekly", period.key):
        if snap["rank"] is None or (top is not None and snap["rank"] > top):
            continue
        try:
            sink.create(snap["user_id"], "weekly_ranking", {
                "rank": snap["rank"], "score": snap["score"],
                "entity_type": "ranking", "entity_id": period.key,
            })
            sent += 1
        except Exception:
            logger.exception("Weekly ranking notification for user %s failed", snap["user_id"])
    logger.info("Weekly ranking %s: %d notifications", period.key, sent)
    return sent


def send_profile_view_digests(
    view_counts: Mapping[int, int], sink: NotificationSink, period_key: str,
) -> int:
    """Tell each user how often their profile was viewed.

    View counts come from the host; the engine does not track views.
    """
    sent = 0
    for user_id, views in view_counts.items():
        if views < PROFILE_VIEW_MIN:
            continue
        try:
            sink.create(user_id, "profile_view_milestone", {
                "view_count": views, "entity_type": "profile_views", "entity_id": period_key,
            })
            sent += 1
        except Exception:
            logger.exception("Profile view digest for user %s failed", user_id)
    return sent


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
class ScheduledJobs:
    def __init__(
        self,
        engine: Engine,
        window: TimeWindow,
        tasks: TaskProgressTracker,
        circles: CircleContributionTracker,
        streaks: StreakTracker,
        sink: NotificationSink | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.engine = engine
        self.window = window
        self.tasks = tasks
        self.circles = circles
        self.streaks = streaks
        self.sink = sink
        self.retention_days = retention_days

    def _run(self, jobs: list[tuple[str, Callable[[], Any]]]) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for name, job in jobs:
            try:
                results[name] = job()
            except Exception:
                logger.exception("Scheduled job %s failed", name)
                results[name] = None
        return results

    def run_daily(self) -> dict[str, Any]:
        return self._run([
            ("daily_snapshot", lambda: create_snapshot(self.engine, self.window, "daily")),
            ("expire_daily_tasks", lambda: self.tasks.expire_old_tasks("daily")),
            ("retention", lambda: run_retention_cleanup(
                self.engine, self.retention_days, now=self.window.now(),
            )),
        ])

    def run_weekly(self) -> dict[str, Any]:
        jobs: list[tuple[str, Callable[[], Any]]] = [
            ("weekly_snapshot", lambda: create_snapshot(self.engine, self.window, "weekly")),
        ]
        if self.sink is not None:
            jobs.append(("weekly_rankings",
                         lambda: send_weekly_rankings(self.engine, self.window, self.sink)))
        jobs += [
            ("reset_grace", self.streaks.reset_weekly_grace),
            ("expire_weekly_tasks", lambda: self.tasks.expire_old_tasks("weekly")),
            ("expire_circle_tasks", self.circles.expire_old_tasks),
            ("reconciliation", lambda: reconcile_scores(self.engine)),
        ]
        return self._run(jobs)

    def run_monthly(self) -> dict[str, Any]:
        return self._run([
            ("monthly_snapshot", lambda: create_snapshot(self.engine, self.window, "monthly")),
            ("expire_monthly_tasks", lambda: self.tasks.expire_old_tasks("monthly")),
        ])

    async def run_async(self, cadence: str) -> dict[str, Any]:
        """Run ``daily``, ``weekly`` or ``monthly`` jobs off the event loop."""
        runners = {
            PeriodType.DAILY: self.run_daily,
            PeriodType.WEEKLY: self.run_weekly,
            PeriodType.MONTHLY: self.run_monthly,
        }
        runner = runners.get(cadence)
        if runner is None:
            raise ValueError(f"Unknown cadence: {cadence}")
        return await run_db(runner)
