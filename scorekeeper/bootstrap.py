"""
scorekeeper.bootstrap — Composition Root
=========================================

Wires every service together once at process start.  Hosts hand in the
database engine and their collaborator implementations and get back a
ready :class:`Scorekeeper` bundle::

    engine = create_db_engine()
    app = build_scorekeeper(engine, identity=MyIdentity(), content=MyContent())
    init_db(engine, app.rules)

    app.dispatcher.dispatch("login_success", {"user_id": 7})
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine

from scorekeeper.collaborators import ContentLookup, IdentityProvider, NotificationSink
from scorekeeper.config import ScorekeeperConfig
from scorekeeper.constants import COMMENT_LIKES_MILESTONE
from scorekeeper.engine.rules import RuleStore, load_rules
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.services.badge_service import BadgeRuleEngine
from scorekeeper.services.circle_service import CircleContributionTracker
from scorekeeper.services.dispatcher import EventDispatcher
from scorekeeper.services.milestone_service import MilestoneEvaluator
from scorekeeper.services.notification_service import NotificationEmitter, NotificationService
from scorekeeper.services.scheduled_jobs import ScheduledJobs
from scorekeeper.services.score_service import RewardLookup, ScoreService
from scorekeeper.services.streak_service import StreakTracker
from scorekeeper.services.task_service import TaskProgressTracker, TaskService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Scorekeeper:
    rules: RuleStore
    window: TimeWindow
    score: ScoreService
    streaks: StreakTracker
    milestones: MilestoneEvaluator
    badges: BadgeRuleEngine
    tasks: TaskProgressTracker
    task_admin: TaskService
    circles: CircleContributionTracker
    notifications: NotificationSink
    dispatcher: EventDispatcher
    jobs: ScheduledJobs


def content_reward_lookup(content: ContentLookup) -> RewardLookup:
    """Resolve ``dynamic`` rule points from the entity's own reward field."""
    def lookup(entity_type: str | None, entity_id: str) -> int | None:
        entity = content.get_entity(entity_type, entity_id)
        return entity.reward_points if entity is not None else None
    return lookup


def build_scorekeeper(
    engine: Engine,
    identity: IdentityProvider,
    content: ContentLookup,
    config: ScorekeeperConfig | None = None,
    rules: RuleStore | None = None,
    clock: Callable[[], datetime] | None = None,
    sink: NotificationSink | None = None,
) -> Scorekeeper:
    """Build every service with explicit dependencies.

    *sink* defaults to the bundled database-backed
    :class:`~scorekeeper.services.notification_service.NotificationService`.
    """
    config = config or ScorekeeperConfig()
    if rules is None:
        rules = load_rules(config.rules_path, dict(config.feature_flags) or None)
    window = TimeWindow(config.timezone, clock)

    score = ScoreService(engine, rules, window, identity, content_reward_lookup(content))
    streaks = StreakTracker(engine, window, score, rules.streak_bonuses, config.weekly_grace_days)
    milestones = MilestoneEvaluator(
        engine, window, score, {COMMENT_LIKES_MILESTONE: rules.comment_like_milestones},
    )
    badges = BadgeRuleEngine(engine, rules, window)
    tasks = TaskProgressTracker(engine, window, score, badges)
    circles = CircleContributionTracker(engine, window, score, identity)
    if sink is None:
        sink = NotificationService(engine, rules, window, identity)

    dispatcher = EventDispatcher(
        rules=rules,
        window=window,
        identity=identity,
        content=content,
        score=score,
        streaks=streaks,
        milestones=milestones,
        tasks=tasks,
        circles=circles,
        badges=badges,
        emitter=NotificationEmitter(sink),
    )
    jobs = ScheduledJobs(
        engine, window, tasks, circles, streaks, sink, config.event_retention_days,
    )
    logger.info("Scorekeeper ready (timezone=%s)", config.timezone)
    return Scorekeeper(
        rules=rules,
        window=window,
        score=score,
        streaks=streaks,
        milestones=milestones,
        badges=badges,
        tasks=tasks,
        task_admin=TaskService(engine),
        circles=circles,
        notifications=sink,
        dispatcher=dispatcher,
        jobs=jobs,
    )


def build_dispatcher(
    engine: Engine,
    identity: IdentityProvider,
    content: ContentLookup,
    config: ScorekeeperConfig | None = None,
    rules: RuleStore | None = None,
    clock: Callable[[], datetime] | None = None,
) -> EventDispatcher:
    """Shortcut when only the dispatcher is needed."""
    return build_scorekeeper(engine, identity, content, config, rules, clock).dispatcher
