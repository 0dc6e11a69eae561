"""
scorekeeper.engine.idempotency — Deterministic Ledger Keys
===========================================================

Maps (event type, user, entity/context) to the idempotency key stored in the
unique ``points_ledger.idempotency_key`` column.  Two requests describing the
same logical action always produce the same key, so the database rejects the
second award no matter how the requests interleave.

Key builders live in a registry keyed by event type; events without a
builder fall back to an entity-scoped key when an entity is present and to a
timestamp-scoped (effectively unique) key otherwise.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class KeyInput:
    """Everything a key builder may look at."""

    event_type: str
    user_id: int
    day: date
    entity_type: str | None = None
    entity_id: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None


def _entity(k: KeyInput, fallback_key: str = "entity_id") -> str:
    value = k.entity_id if k.entity_id is not None else k.context.get(fallback_key)
    return "" if value is None else str(value)


def _per_day(k: KeyInput) -> str:
    return f"user:{k.user_id}|day:{k.day.isoformat()}|{k.event_type}"


def _entity_scoped(prefix: str) -> Callable[[KeyInput], str]:
    def build(k: KeyInput) -> str:
        return f"user:{k.user_id}|{prefix}:{_entity(k)}|{k.event_type}"
    return build


def _calculator(k: KeyInput) -> str:
    calc_type = k.context.get("calculator_type") or _entity(k)
    return f"user:{k.user_id}|calc:{calc_type}|{k.event_type}"


def _rating(k: KeyInput) -> str:
    target_type = k.entity_type or k.context.get("target_type") or "entity"
    return f"user:{k.user_id}|target:{target_type}:{_entity(k)}|{k.event_type}"


def _comment_created(k: KeyInput) -> str:
    return f"comment:{_entity(k, 'comment_id')}|{k.event_type}"


def _comment_liked(k: KeyInput) -> str:
    return f"liker:{k.user_id}|comment:{_entity(k, 'comment_id')}|{k.event_type}"


def _follow_accepted(k: KeyInput) -> str:
    a = int(k.context["follower_id"])
    b = int(k.context["followed_id"])
    role = k.context.get("role", "follower")
    return f"pair:{min(a, b)}-{max(a, b)}|role:{role}|{k.event_type}"


def _highfive(k: KeyInput) -> str:
    receiver = k.context.get("target_user_id") or _entity(k)
    return f"sender:{k.user_id}|recv:{receiver}|day:{k.day.isoformat()}|{k.event_type}"


def _bucket(k: KeyInput) -> str:
    bucket = k.context.get("bucket")
    if bucket is None:
        bucket = k.entity_id
    if bucket is None:
        bucket = _timestamp_token(k)
    return str(bucket)


def _water(k: KeyInput) -> str:
    return f"{_per_day(k)}|bucket:{_bucket(k)}"


def _steps(k: KeyInput) -> str:
    return f"user:{k.user_id}|day:{k.day.isoformat()}|steps_bucket:{k.context.get('bucket', 0)}"


def _meal_photo(k: KeyInput) -> str:
    return f"user:{k.user_id}|day:{k.day.isoformat()}|meal_photo:{_bucket(k)}"


def _timestamp_token(k: KeyInput) -> str:
    moment = k.timestamp or datetime.now()
    return moment.isoformat(timespec="microseconds")


def _fallback(k: KeyInput) -> str:
    if k.entity_id is not None:
        return f"user:{k.user_id}|{k.entity_type or 'entity'}:{k.entity_id}|{k.event_type}"
    return f"event:{k.event_type}|user:{k.user_id}|timestamp:{_timestamp_token(k)}"


KEY_BUILDERS: dict[str, Callable[[KeyInput], str]] = {
    "login_success": _per_day,
    "blog_points_claimed": _entity_scoped("blog"),
    "diet_started": _entity_scoped("diet"),
    "diet_completed": _entity_scoped("diet"),
    "exercise_started": _entity_scoped("exercise"),
    "exercise_completed": _entity_scoped("exercise"),
    "circle_created": _entity_scoped("circle"),
    "circle_joined": _entity_scoped("circle"),
    "calculator_saved": _calculator,
    "rating_submitted": _rating,
    "comment_created": _comment_created,
    "comment_liked": _comment_liked,
    "follow_accepted": _follow_accepted,
    "highfive_sent": _highfive,
    "water_added": _water,
    "steps_logged": _steps,
    "meal_photo_uploaded": _meal_photo,
}


def key_for(k: KeyInput) -> str:
    """Return the idempotency key for one award."""
    builder = KEY_BUILDERS.get(k.event_type, _fallback)
    return builder(k)


# ---------------------------------------------------------------------------
# Keys for engine-originated awards
# ---------------------------------------------------------------------------
def streak_bonus_key(user_id: int, streak_type: str, value: int, day: date) -> str:
    return f"user:{user_id}|streak:{streak_type}|value:{value}|day:{day.isoformat()}|streak_milestone"


def milestone_key(target_entity_id: str, milestone_value: int, milestone_type: str) -> str:
    return f"{milestone_type}:{target_entity_id}|milestone:{milestone_value}|milestone_rewarded"


def task_reward_key(user_id: int, task_slug: str, period_key: str) -> str:
    return f"user:{user_id}|task:{task_slug}|period:{period_key}|task_completed"


def circle_task_reward_key(user_id: int, circle_task_id: int) -> str:
    return f"user:{user_id}|circle_task:{circle_task_id}|circle_task_completed"
