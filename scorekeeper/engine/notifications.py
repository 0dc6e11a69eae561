"""
scorekeeper.engine.notifications — Event → Notification Mapping
================================================================

Pure mapping from a finished dispatch to the notifications it should
produce.  Storage and delivery belong to the sink
(:mod:`scorekeeper.services.notification_service`).

Each mapper receives the dispatched :class:`Event`, the
:class:`DispatchResult`, and ``extras`` — facts resolved during the
dispatch such as a comment's author or an entity's title.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from scorekeeper.constants import CONTENT_COMPLETION_EVENTS
from scorekeeper.engine.events import DispatchResult, Event


@dataclass(frozen=True, slots=True)
class NotificationIntent:
    user_id: int
    notification_type: str
    params: dict[str, Any] = field(default_factory=dict)
    actor_id: int | None = None
    entity_type: str | None = None
    entity_id: str | None = None


Mapper = Callable[[Event, DispatchResult, Mapping[str, Any]], list[NotificationIntent]]


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------
def _login(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    streak = result.streak
    if streak is None or streak.unchanged:
        return []
    if streak.is_new_milestone:
        return [NotificationIntent(event.user_id, "streak_milestone",
                                   {"streak": streak.current_streak, "bonus": streak.bonus_points})]
    out: list[NotificationIntent] = []
    if streak.grace_used:
        out.append(NotificationIntent(event.user_id, "grace_used",
                                      {"grace_remaining": extras.get("grace_remaining", 0)}))
    if streak.broken_from and streak.broken_from > 1:
        out.append(NotificationIntent(event.user_id, "streak_broken",
                                      {"previous_streak": streak.broken_from}))
    elif streak.current_streak > 1:
        out.append(NotificationIntent(event.user_id, "streak_continued",
                                      {"streak": streak.current_streak}))
    return out


def _follow_accepted(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    follower = _as_int(event.context.get("follower_id"))
    followed = _as_int(event.context.get("followed_id"))
    if follower is None or followed is None:
        return []
    return [
        NotificationIntent(follower, "follow_accepted", actor_id=followed,
                           entity_type="user", entity_id=str(followed)),
        NotificationIntent(followed, "new_follower", actor_id=follower,
                           entity_type="user", entity_id=str(follower)),
    ]


def _highfive(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    receiver = _as_int(event.context.get("target_user_id") or event.entity_id)
    if receiver is None:
        return []
    return [NotificationIntent(receiver, "highfive_received", actor_id=event.user_id,
                               entity_type="user", entity_id=str(event.user_id))]


def _comment_created(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    params = {"entity_title": extras.get("entity_title")}
    comment_id = str(event.context.get("comment_id") or event.entity_id)
    parent_author = _as_int(extras.get("parent_author_id"))
    if parent_author is not None:
        return [NotificationIntent(parent_author, "comment_reply", params, event.user_id,
                                   "comment", comment_id)]
    content_author = _as_int(extras.get("content_author_id"))
    if content_author is not None:
        return [NotificationIntent(content_author, "comment_on_content", params, event.user_id,
                                   "comment", comment_id)]
    return []


def _comment_liked(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    author = _as_int(extras.get("comment_author_id"))
    if author is None:
        return []
    comment_id = str(event.context.get("comment_id") or event.entity_id)
    out = [NotificationIntent(author, "comment_liked", {}, event.user_id, "comment", comment_id)]
    if result.milestone is not None:
        out.append(NotificationIntent(
            result.milestone.awarded_to, "comment_like_milestone",
            {"like_count": result.milestone.milestone_value, "points": result.milestone.points},
            None, "comment", comment_id,
        ))
    return out


def _content_completed(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    if result.points_earned <= 0:
        return []
    return [NotificationIntent(
        event.user_id, "content_completed",
        {"label": extras.get("label"), "points": result.points_earned,
         "entity_title": extras.get("entity_title")},
        None, event.entity_type, event.entity_id,
    )]


def _circle_joined(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    return [NotificationIntent(event.user_id, "circle_joined",
                               {"circle_name": event.context.get("circle_name")},
                               None, "circle", event.entity_id)]


def _rating(event: Event, result: DispatchResult, extras: Mapping[str, Any]) -> list[NotificationIntent]:
    target = _as_int(event.context.get("target_user_id") or extras.get("entity_author_id"))
    if target is None:
        return []
    return [NotificationIntent(target, "rating_received", {"rating": event.context.get("rating")},
                               event.user_id, event.entity_type, event.entity_id)]


NOTIFICATION_MAPPERS: dict[str, Mapper] = {
    "login_success": _login,
    "follow_accepted": _follow_accepted,
    "highfive_sent": _highfive,
    "comment_created": _comment_created,
    "comment_liked": _comment_liked,
    "circle_joined": _circle_joined,
    "rating_submitted": _rating,
    **{name: _content_completed for name in CONTENT_COMPLETION_EVENTS},
}


def notifications_for(
    event: Event,
    result: DispatchResult,
    extras: Mapping[str, Any] | None = None,
) -> list[NotificationIntent]:
    """All notifications a dispatch should create, self-notifications dropped."""
    extras = extras or {}
    intents: list[NotificationIntent] = []
    mapper = NOTIFICATION_MAPPERS.get(event.event_type)
    if mapper is not None:
        intents.extend(mapper(event, result, extras))

    if result.badge is not None:
        intents.append(NotificationIntent(
            event.user_id, "badge_earned",
            {"badge_title": result.badge.title, "badge_slug": result.badge.slug},
            None, "badge", result.badge.slug,
        ))
    for task in result.tasks or []:
        if task.just_completed:
            intents.append(NotificationIntent(
                event.user_id, "task_completed",
                {"task_title": task.title, "points": task.reward_points},
                None, "task", task.task_slug,
            ))

    return [i for i in intents if i.actor_id is None or i.actor_id != i.user_id]
