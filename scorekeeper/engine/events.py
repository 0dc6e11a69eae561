"""
scorekeeper.engine.events — Event & Result Types
=================================================

The engine's input (:class:`Event`) and output (:class:`DispatchResult`)
records.  Pure data, no I/O.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from scorekeeper.engine.milestones import MilestoneAward
from scorekeeper.engine.streaks import StreakOutcome


class EventType(enum.StrEnum):
    """Event types that have a scoring rule or are logged by the engine."""
    LOGIN_SUCCESS = "login_success"
    BLOG_POINTS_CLAIMED = "blog_points_claimed"
    DIET_STARTED = "diet_started"
    DIET_COMPLETED = "diet_completed"
    EXERCISE_STARTED = "exercise_started"
    EXERCISE_COMPLETED = "exercise_completed"
    CALCULATOR_SAVED = "calculator_saved"
    RATING_SUBMITTED = "rating_submitted"
    COMMENT_CREATED = "comment_created"
    COMMENT_LIKED = "comment_liked"
    FOLLOW_ACCEPTED = "follow_accepted"
    HIGHFIVE_SENT = "highfive_sent"
    WATER_ADDED = "water_added"
    WATER_GOAL_REACHED = "water_goal_reached"
    NUTRITION_GOAL_REACHED = "nutrition_goal_reached"
    MINDFUL_EXERCISE_COMPLETED = "mindful_exercise_completed"
    STEPS_LOGGED = "steps_logged"
    MEAL_PHOTO_UPLOADED = "meal_photo_uploaded"
    CIRCLE_CREATED = "circle_created"
    CIRCLE_JOINED = "circle_joined"
    # Engine-originated
    STREAK_MILESTONE = "streak_milestone"
    COMMENT_LIKE_MILESTONE = "comment_like_milestone"
    TASK_COMPLETED = "task_completed"
    CIRCLE_TASK_COMPLETED = "circle_task_completed"


@dataclass(frozen=True, slots=True)
class Event:
    """A single action submitted for scoring.  Never mutated."""

    event_type: str
    user_id: int
    entity_type: str | None = None
    entity_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TaskProgressView:
    """One task progress row that changed during a dispatch."""

    task_slug: str
    title: str
    task_type: str
    period_key: str
    current_value: int
    target_value: int
    status: str
    just_completed: bool = False
    reward_points: int = 0


@dataclass(frozen=True, slots=True)
class BadgeView:
    slug: str
    title: str
    category: str
    tier: str
    earned_at: datetime


@dataclass(slots=True)
class DispatchResult:
    """Structured outcome of :meth:`EventDispatcher.dispatch`.

    ``success`` is False only for hard failures (no user, disabled feature,
    malformed payload).  Soft denials report success with a ``flag``.
    """

    success: bool
    event_type: str
    message: str = ""
    points_earned: int = 0
    total_score: int = 0
    daily_score: int = 0
    flag: str | None = None
    streak: StreakOutcome | None = None
    milestone: MilestoneAward | None = None
    tasks: list[TaskProgressView] | None = None
    badge: BadgeView | None = None
    participants: dict[int, int] | None = None  # follow_accepted: user -> points

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form with absent stages dropped."""
        return {k: v for k, v in asdict(self).items() if v is not None}
