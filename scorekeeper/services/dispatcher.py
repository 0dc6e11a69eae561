"""
scorekeeper.services.dispatcher — Event Dispatch Pipeline
==========================================================

Single entry point for every scored action::

    result = dispatcher.dispatch("exercise_completed", {"user_id": 7, "entity_id": 42})

Pipeline:
    1. Resolve the acting user (payload, then identity provider).
    2. Merge the event context and enrich it from the content lookup.
    3. ``follow_accepted`` scores both participants separately and stops.
       Pro users: journal the event at 0 points and stop.
    4. Eligibility → award (ledger + score counters + journal, one txn).
    5. Per-event side effects (streaks, comment-like milestones).
    6. Registered listeners.
    7. Task progress, circle contributions, badges.
    8. Notifications.

Everything after step 4 runs after the award has committed; a failing
stage is logged and its field is left off the result.  Per-event behaviour
lives in the ``CONTEXT_ENRICHERS`` and ``SIDE_EFFECTS`` registries, keyed by
event type, rather than in the pipeline itself.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from scorekeeper.collaborators import ContentLookup, IdentityProvider
from scorekeeper.constants import (
    ALWAYS_EVALUATE_TASK_EVENTS,
    CIRCLE_CONTRIBUTION_EVENTS,
    CIRCLE_TASK_COMPLETED_EVENT,
    COMMENT_LIKES_MILESTONE,
    CONTENT_COMPLETION_EVENTS,
    CONTEXT_PASSTHROUGH_KEYS,
    DAILY_LOGIN_STREAK,
)
from scorekeeper.engine.events import DispatchResult, Event, EventType
from scorekeeper.engine.rules import RuleStore, ScoringRule
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.errors import PersistenceConflict, Unauthenticated
from scorekeeper.services.badge_service import BadgeRuleEngine
from scorekeeper.services.circle_service import CircleContributionTracker
from scorekeeper.services.milestone_service import MilestoneEvaluator
from scorekeeper.services.notification_service import NotificationEmitter
from scorekeeper.services.score_service import DenialReason, Eligibility, ScoreService, ScoreTotals
from scorekeeper.services.streak_service import StreakTracker
from scorekeeper.services.task_service import TaskProgressTracker, completion_events

logger = logging.getLogger(__name__)

PRO_MESSAGE = "Pro members do not earn points."

Listener = Callable[[int, Mapping[str, Any], DispatchResult], None]


@dataclass(slots=True)
class DispatchState:
    """Mutable per-dispatch scratchpad shared by enrichers and side effects."""

    event: Event
    rule: ScoringRule
    payload: Mapping[str, Any]
    circle_id: int | None = None
    extras: dict[str, Any] = field(default_factory=dict)
    pro_cache: dict[int, bool] = field(default_factory=dict)

    def with_context(self, **values: Any) -> None:
        """Add context keys that are not already set."""
        merged = dict(self.event.context)
        for key, value in values.items():
            if value is not None and merged.get(key) is None:
                merged[key] = value
        self.event = replace(self.event, context=merged)


Enricher = Callable[["EventDispatcher", DispatchState], None]
SideEffect = Callable[["EventDispatcher", DispatchState, DispatchResult], None]


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Context enrichers (run before eligibility)
# ---------------------------------------------------------------------------
def _comment_id(state: DispatchState) -> str | None:
    raw = state.event.context.get("comment_id") or state.event.entity_id
    return None if raw is None else str(raw)


def _enrich_comment_created(d: EventDispatcher, state: DispatchState) -> None:
    comment_id = _comment_id(state)
    comment = d.content.get_comment(comment_id) if comment_id else None
    if comment is None:
        return
    state.extras["parent_author_id"] = comment.parent_author_id
    state.extras["content_author_id"] = comment.content_author_id
    state.with_context(
        comment_id=comment.comment_id,
        target_user_id=comment.parent_author_id or comment.content_author_id,
    )
    if comment.entity_id is not None:
        entity = d.content.get_entity(comment.entity_type, comment.entity_id)
        if entity is not None:
            state.extras["entity_title"] = entity.title


def _enrich_comment_liked(d: EventDispatcher, state: DispatchState) -> None:
    comment_id = _comment_id(state)
    comment = d.content.get_comment(comment_id) if comment_id else None
    if comment is None:
        return
    state.extras["comment_author_id"] = comment.author_id
    state.extras["like_count"] = comment.like_count
    state.with_context(comment_id=comment.comment_id, target_user_id=comment.author_id)


def _enrich_entity(d: EventDispatcher, state: DispatchState) -> None:
    event = state.event
    state.extras["label"] = state.rule.label
    if event.entity_id is None:
        return
    entity = d.content.get_entity(event.entity_type, event.entity_id)
    if entity is None:
        return
    state.extras["entity_title"] = entity.title
    state.extras["entity_author_id"] = entity.author_id


def _enrich_highfive(d: EventDispatcher, state: DispatchState) -> None:
    state.with_context(target_user_id=_as_int(state.event.entity_id))


CONTEXT_ENRICHERS: dict[str, Enricher] = {
    EventType.COMMENT_CREATED: _enrich_comment_created,
    EventType.COMMENT_LIKED: _enrich_comment_liked,
    EventType.HIGHFIVE_SENT: _enrich_highfive,
    EventType.RATING_SUBMITTED: _enrich_entity,
    **{name: _enrich_entity for name in CONTENT_COMPLETION_EVENTS},
}


# ---------------------------------------------------------------------------
# Post-award side effects
# ---------------------------------------------------------------------------
def _record_streak(d: EventDispatcher, state: DispatchState, result: DispatchResult) -> None:
    if not state.rule.requires_streak:
        return
    user_id = state.event.user_id
    outcome = d.streaks.record_activity(user_id, DAILY_LOGIN_STREAK, state.circle_id)
    result.streak = outcome
    result.points_earned += outcome.bonus_points
    if outcome.grace_used:
        state.extras["grace_remaining"] = d.streaks.get_streak(user_id, DAILY_LOGIN_STREAK).grace_remaining


def _comment_like_milestone(d: EventDispatcher, state: DispatchState, result: DispatchResult) -> None:
    author = _as_int(state.extras.get("comment_author_id"))
    like_count = _as_int(state.extras.get("like_count"))
    comment_id = _comment_id(state)
    if author is None or like_count is None or comment_id is None:
        return
    if d.is_pro(state, author):
        return
    result.milestone = d.milestones.check_and_award(
        author, COMMENT_LIKES_MILESTONE, comment_id, like_count, d.identity.circle_id(author),
    )


SIDE_EFFECTS: dict[str, list[SideEffect]] = {
    EventType.LOGIN_SUCCESS: [_record_streak],
    EventType.COMMENT_LIKED: [_comment_like_milestone],
}


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------
class EventDispatcher:
    def __init__(
        self,
        *,
        rules: RuleStore,
        window: TimeWindow,
        identity: IdentityProvider,
        content: ContentLookup,
        score: ScoreService,
        streaks: StreakTracker,
        milestones: MilestoneEvaluator,
        tasks: TaskProgressTracker,
        circles: CircleContributionTracker,
        badges: BadgeRuleEngine,
        emitter: NotificationEmitter | None = None,
    ) -> None:
        self.rules = rules
        self.window = window
        self.identity = identity
        self.content = content
        self.score = score
        self.streaks = streaks
        self.milestones = milestones
        self.tasks = tasks
        self.circles = circles
        self.badges = badges
        self.emitter = emitter
        self.enrichers: dict[str, Enricher] = dict(CONTEXT_ENRICHERS)
        self.side_effects: dict[str, list[SideEffect]] = {k: list(v) for k, v in SIDE_EFFECTS.items()}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    # -- registration -----------------------------------------------------
    def register_listener(self, event_type: str, listener: Listener) -> None:
        """Call *listener* after every successful award of *event_type*."""
        self._listeners[event_type].append(listener)

    def register_side_effect(self, event_type: str, handler: SideEffect) -> None:
        self.side_effects.setdefault(event_type, []).append(handler)

    # -- helpers ----------------------------------------------------------
    def is_pro(self, state: DispatchState, user_id: int) -> bool:
        if user_id not in state.pro_cache:
            state.pro_cache[user_id] = self.score.is_pro_user(user_id)
        return state.pro_cache[user_id]

    def _guarded(self, stage: str, state: DispatchState, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except Exception:
            logger.exception("Stage %s failed for %s (user %s)",
                             stage, state.event.event_type, state.event.user_id)
            return None

    @staticmethod
    def _build_event(
        event_type: str, user_id: int, payload: Mapping[str, Any], now: datetime,
    ) -> Event:
        context = dict(payload.get("context") or {})
        for key in CONTEXT_PASSTHROUGH_KEYS:
            if payload.get(key) is not None and context.get(key) is None:
                context[key] = payload[key]
        entity_type = payload.get("entity_type")
        entity_id = payload.get("entity_id")
        entity_id = None if entity_id is None else str(entity_id)
        if entity_type is not None:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = entity_id
        return Event(event_type, user_id, entity_type, entity_id, context, now)

    def _result(
        self,
        event_type: str,
        totals: ScoreTotals,
        *,
        success: bool = True,
        message: str = "",
        points: int = 0,
        flag: str | None = None,
    ) -> DispatchResult:
        return DispatchResult(
            success=success,
            event_type=event_type,
            message=message,
            points_earned=points,
            total_score=totals.total_score,
            daily_score=totals.daily_score,
            flag=flag,
        )

    def _soft_denial(self, state: DispatchState, reason: DenialReason) -> DispatchResult:
        self.score.log_only(state.event)
        totals = self.score.get_scores(state.event.user_id)
        return self._result(
            state.event.event_type, totals,
            message=self.score.denial_message(reason, state.rule.label), flag=reason.value,
        )

    # -- entry point ------------------------------------------------------
    def dispatch(self, event_type: str, payload: Mapping[str, Any] | None = None) -> DispatchResult:
        """Score one event and run every downstream stage.

        Never raises for ordinary outcomes; see :class:`DispatchResult`.
        """
        payload = dict(payload or {})
        user_id = _as_int(payload.get("user_id"))
        if user_id is None:
            user_id = _as_int(self.identity.current_user_id())
        if user_id is None:
            return DispatchResult(False, event_type, message=str(Unauthenticated()))

        event = self._build_event(event_type, user_id, payload, self.window.now())
        state = DispatchState(event=event, rule=self.rules.rule(event_type), payload=payload)
        state.circle_id = self._guarded("circle lookup", state, self.identity.circle_id, user_id)

        enricher = self.enrichers.get(event_type)
        if enricher is not None:
            self._guarded("enrich", state, enricher, self, state)

        if event_type == EventType.FOLLOW_ACCEPTED:
            return self._dispatch_follow(state)

        if self.is_pro(state, user_id):
            self.score.log_only(state.event)
            logger.debug("Pro user %s: %s logged without points", user_id, event_type)
            return self._result(event_type, self.score.get_scores(user_id), message=PRO_MESSAGE)

        eligibility = self.score.can_earn_points(
            user_id, event_type, state.event.entity_id, state.event.context, state.event,
        )
        if not eligibility.allowed:
            if eligibility.soft:
                return self._soft_denial(state, eligibility.reason)
            return self._result(event_type, ScoreTotals(), success=False,
                                message=eligibility.reason.value, flag=eligibility.reason.value)

        try:
            totals = self.score.award(state.event, eligibility.points, eligibility.key, state.circle_id)
        except PersistenceConflict:
            return self._soft_denial(state, DenialReason.ALREADY_EARNED)

        points = eligibility.points
        message = f"{state.rule.label}: +{points} points" if points else state.rule.label
        result = self._result(event_type, totals, message=message, points=points)
        self._run_downstream(state, result, eligibility)
        return result

    # -- downstream stages ------------------------------------------------
    def _run_downstream(self, state: DispatchState, result: DispatchResult, eligibility: Eligibility) -> None:
        event = state.event
        user_id = event.user_id

        for handler in self.side_effects.get(event.event_type, []):
            self._guarded("side effect", state, handler, self, state, result)

        for listener in self._listeners.get(event.event_type, []):
            self._guarded("listener", state, listener, user_id, state.payload, result)

        badge_events = [event.event_type]
        if eligibility.points > 0 or event.event_type in ALWAYS_EVALUATE_TASK_EVENTS:
            views = self._guarded("tasks", state, self.tasks.process_event,
                                  user_id, event.event_type, event.context, state.circle_id)
            if views is not None:
                result.tasks = views
                for view in views:
                    if view.just_completed:
                        result.points_earned += view.reward_points
                        badge_events.extend(completion_events(view.task_type))

        if event.event_type in CIRCLE_CONTRIBUTION_EVENTS and state.circle_id is not None:
            progress = self._guarded("circles", state, self.circles.process_event,
                                     state.circle_id, user_id, event.event_type, event.context)
            for item in progress or []:
                if item.completed and user_id in item.rewarded_members:
                    result.points_earned += item.reward_points
                    state.extras.setdefault("circle_tasks_completed", []).append(item.task_slug)
                    badge_events.append(CIRCLE_TASK_COMPLETED_EVENT)

        result.badge = self._guarded("badges", state, self.badges.process_event,
                                     user_id, list(dict.fromkeys(badge_events)), event.context)

        totals = self._guarded("totals", state, self.score.get_scores, user_id)
        if totals is not None:
            result.total_score = totals.total_score
            result.daily_score = totals.daily_score

        if self.emitter is not None:
            self._guarded("notifications", state, self.emitter.emit, event, result, state.extras)

    # -- follow_accepted --------------------------------------------------
    def _dispatch_follow(self, state: DispatchState) -> DispatchResult:
        """Evaluate and reward follower and followed independently."""
        event = state.event
        follower = _as_int(event.context.get("follower_id"))
        followed = _as_int(event.context.get("followed_id"))
        if follower is None or followed is None:
            reason = DenialReason.INVALID_PAYLOAD.value
            return self._result(event.event_type, ScoreTotals(), success=False, message=reason, flag=reason)

        participants: dict[int, int] = {}
        flags: list[str] = []
        for role, participant in (("follower", follower), ("followed", followed)):
            scoped = replace(event, user_id=participant, context={**event.context, "role": role})
            if self.is_pro(state, participant):
                self.score.log_only(scoped)
                participants[participant] = 0
                continue
            eligibility = self.score.can_earn_points(
                participant, event.event_type, scoped.entity_id, scoped.context, scoped,
            )
            if not eligibility.allowed:
                if not eligibility.soft:
                    reason = eligibility.reason.value
                    return self._result(event.event_type, ScoreTotals(), success=False,
                                        message=reason, flag=reason)
                self.score.log_only(scoped)
                participants[participant] = 0
                flags.append(eligibility.reason.value)
                continue
            try:
                self.score.award(scoped, eligibility.points, eligibility.key,
                                 self._guarded("circle lookup", state, self.identity.circle_id, participant))
            except PersistenceConflict:
                self.score.log_only(scoped)
                participants[participant] = 0
                flags.append(DenialReason.ALREADY_EARNED.value)
                continue
            participants[participant] = eligibility.points

        points = participants.get(event.user_id, 0)
        totals = self.score.get_scores(event.user_id)
        all_denied = len(flags) == len(participants)
        flag = flags[0] if all_denied and flags else None
        message = (
            self.score.denial_message(DenialReason(flag), state.rule.label) if flag
            else f"{state.rule.label}: +{sum(participants.values())} points shared"
        )
        result = self._result(event.event_type, totals, message=message, points=points, flag=flag)
        result.participants = participants

        if flag is None and self.emitter is not None:
            self._guarded("notifications", state, self.emitter.emit, event, result, state.extras)
        return result
