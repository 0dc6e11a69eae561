"""
scorekeeper.engine.rules — Declarative Rule Store
==================================================

Loads the scoring rules, badge definitions, static task definitions,
notification templates and feature flags from ``rules.yaml`` and validates
them once with pydantic.  The resulting :class:`RuleStore` is immutable and
safe to share between threads.

This module is pure lookup — no database I/O.

Usage::

    from scorekeeper.engine.rules import load_rules

    rules = load_rules()                      # packaged defaults
    rules.rule("login_success").points        # 2
    rules.flags.is_enabled("enable_meal_photos")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from importlib.resources import files
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from scorekeeper.errors import InvalidEventType, RuleConfigurationError

logger = logging.getLogger(__name__)

DYNAMIC = "dynamic"
DEFAULT_DYNAMIC_POINTS = 10


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------
class SelectorPoints(_Frozen):
    """Points chosen from a small map by one context value.

    ``{"key": "post_kind", "values": {"sticky": 50, "normal": 10}, "default": "normal"}``
    """

    key: str
    values: dict[str, int]
    default: str

    @model_validator(mode="after")
    def _default_is_a_value(self) -> SelectorPoints:
        if self.default not in self.values:
            raise ValueError(f"selector default {self.default!r} not in values")
        return self

    def resolve(self, context: Mapping[str, Any]) -> int:
        choice = context.get(self.key)
        if choice is None or str(choice) not in self.values:
            choice = self.default
        return self.values[str(choice)]


class ScoringRule(_Frozen):
    """How one event type earns points."""

    event_type: str = ""
    label: str
    points: int | SelectorPoints | Literal["dynamic"] = 0
    per_entity_limit: int | None = None
    daily_limit: int | None = None
    daily_pair_limit: int | None = None
    feature_flag: str | None = None
    requires_streak: bool = False

    @property
    def is_dynamic(self) -> bool:
        return self.points == DYNAMIC

    @property
    def is_zero(self) -> bool:
        return self.points == 0


# ---------------------------------------------------------------------------
# Badge conditions: tagged union keyed by ``type``
# ---------------------------------------------------------------------------
class _Condition(_Frozen):
    def trigger_events(self) -> frozenset[str]:
        """Event types that can change this condition's progress."""
        event = getattr(self, "event", None)
        return frozenset({event}) if event else frozenset()

    def goal(self, max_progress: int) -> int:
        return getattr(self, "target", None) or max_progress


class CountCondition(_Condition):
    type: Literal["COUNT"]
    event: str
    target: int | None = None
    context_filter: dict[str, str] = Field(default_factory=dict)


class CountUniqueDaysCondition(_Condition):
    type: Literal["COUNT_UNIQUE_DAYS"]
    event: str
    target: int | None = None


class StreakCondition(_Condition):
    type: Literal["STREAK"]
    streak_type: str = "daily_login"
    target: int | None = None

    def trigger_events(self) -> frozenset[str]:
        return frozenset({"login_success"})


class ConsecutiveWeeksCondition(_Condition):
    type: Literal["CONSECUTIVE_WEEKS"]
    event: str
    target: int | None = None


class CountInPeriodCondition(_Condition):
    type: Literal["COUNT_IN_PERIOD"]
    event: str
    period: Literal["daily", "weekly", "monthly"] = "monthly"
    target: int | None = None


class ComebackCondition(_Condition):
    type: Literal["COMEBACK"]
    event: str = "login_success"
    min_gap_days: int = 7
    active_days_after: int = 3

    def goal(self, max_progress: int) -> int:
        return self.active_days_after


class CircleContributionCondition(_Condition):
    type: Literal["CIRCLE_CONTRIBUTION"]
    min_contribution_percent: float = 10
    unique_tasks: int = 3

    def trigger_events(self) -> frozenset[str]:
        return frozenset({"exercise_completed", "steps_logged", "circle_task_completed"})

    def goal(self, max_progress: int) -> int:
        return self.unique_tasks


class CircleHeroCondition(_Condition):
    type: Literal["CIRCLE_HERO"]
    min_contribution_percent: float = 20
    completion_window_hours: int = 24

    def trigger_events(self) -> frozenset[str]:
        return frozenset({"circle_task_completed"})

    def goal(self, max_progress: int) -> int:
        return 1


class CountUniqueUsersCondition(_Condition):
    type: Literal["COUNT_UNIQUE_USERS"]
    events: tuple[str, ...]
    target: int | None = None

    def trigger_events(self) -> frozenset[str]:
        return frozenset(self.events)


BadgeCondition = Annotated[
    Union[
        CountCondition,
        CountUniqueDaysCondition,
        StreakCondition,
        ConsecutiveWeeksCondition,
        CountInPeriodCondition,
        ComebackCondition,
        CircleContributionCondition,
        CircleHeroCondition,
        CountUniqueUsersCondition,
    ],
    Field(discriminator="type"),
]


class BadgeDefinition(_Frozen):
    slug: str
    title: str
    category: str
    tier: str
    max_progress: int = Field(gt=0)
    condition: BadgeCondition

    @property
    def goal(self) -> int:
        """Progress value at which the badge is earned."""
        return self.condition.goal(self.max_progress)

    def matches(self, event_type: str) -> bool:
        return event_type in self.condition.trigger_events()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
TaskType = Literal["daily", "weekly", "monthly", "circle", "mentor"]


class TaskDefinition(_Frozen):
    slug: str
    title: str
    description: str = ""
    task_type: TaskType
    target_value: int = Field(gt=0)
    scoring_event_types: tuple[str, ...]
    reward_score: int = 0
    badge_progress_contribution: int | None = Field(default=None, ge=0, le=100)
    reward_badge_slug: str | None = None
    magnitude_key: str | None = None
    count_unique_days: bool = False
    is_active: bool = True


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class NotificationTemplate(_Frozen):
    category: str
    icon: str
    title: str
    body: str
    expires_days: int = 7

    def render(self, params: Mapping[str, Any]) -> tuple[str, str]:
        """Return ``(title, body)`` with ``{placeholders}`` filled from *params*."""
        values = _KeepMissing({k: v for k, v in params.items() if v is not None})
        return self.title.format_map(values), self.body.format_map(values)


# ---------------------------------------------------------------------------
# Flags & schedules
# ---------------------------------------------------------------------------
class FeatureFlags(_Frozen):
    model_config = ConfigDict(frozen=True, extra="allow")

    enable_daily_score_cap: bool = False
    daily_score_cap_value: int = 500

    def is_enabled(self, name: str) -> bool:
        extra = self.model_extra or {}
        if name in extra:
            return bool(extra[name])
        return bool(getattr(self, name, False))

    def names(self) -> set[str]:
        return set(type(self).model_fields) | set(self.model_extra or {})


class MilestoneSchedule(_Frozen):
    thresholds: dict[int, int]
    repeat_every: int | None = None
    repeat_points: int = 0


class RuleSet(_Frozen):
    scoring_rules: dict[str, ScoringRule]
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)
    streak_bonuses: dict[int, int] = Field(default_factory=dict)
    comment_like_milestones: MilestoneSchedule
    badges: tuple[BadgeDefinition, ...] = ()
    tasks: tuple[TaskDefinition, ...] = ()
    notification_templates: dict[str, NotificationTemplate] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _stamp_event_types(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("scoring_rules"), dict):
            data = dict(data)
            data["scoring_rules"] = {
                name: {**(spec or {}), "event_type": name}
                for name, spec in data["scoring_rules"].items()
            }
        return data

    @model_validator(mode="after")
    def _cross_references(self) -> RuleSet:
        flags = self.feature_flags.names()
        for rule in self.scoring_rules.values():
            if rule.feature_flag and rule.feature_flag not in flags:
                raise ValueError(
                    f"rule {rule.event_type!r} references unknown flag {rule.feature_flag!r}"
                )
        slugs = [b.slug for b in self.badges]
        if len(slugs) != len(set(slugs)):
            raise ValueError("duplicate badge slug")
        task_slugs = [t.slug for t in self.tasks]
        if len(task_slugs) != len(set(task_slugs)):
            raise ValueError("duplicate task slug")
        for task in self.tasks:
            if task.reward_badge_slug and task.reward_badge_slug not in slugs:
                raise ValueError(
                    f"task {task.slug!r} links unknown badge {task.reward_badge_slug!r}"
                )
        return self


# ---------------------------------------------------------------------------
# RuleStore: read-only facade over a validated RuleSet
# ---------------------------------------------------------------------------
class RuleStore:
    """Immutable lookup over the validated rule tables."""

    def __init__(self, ruleset: RuleSet) -> None:
        self._ruleset = ruleset
        self._badges = {b.slug: b for b in ruleset.badges}

    @property
    def flags(self) -> FeatureFlags:
        return self._ruleset.feature_flags

    @property
    def streak_bonuses(self) -> dict[int, int]:
        return self._ruleset.streak_bonuses

    @property
    def comment_like_milestones(self) -> MilestoneSchedule:
        return self._ruleset.comment_like_milestones

    @property
    def badges(self) -> tuple[BadgeDefinition, ...]:
        return self._ruleset.badges

    @property
    def tasks(self) -> tuple[TaskDefinition, ...]:
        return self._ruleset.tasks

    def is_known(self, event_type: str) -> bool:
        return event_type in self._ruleset.scoring_rules

    def rule(self, event_type: str) -> ScoringRule:
        """Return the rule for *event_type*.

        Unknown types degrade to a zero-point rule labelled with the raw type.
        """
        rule = self._ruleset.scoring_rules.get(event_type)
        if rule is None:
            logger.debug("No scoring rule for %s — treating as zero-point", event_type)
            return ScoringRule(event_type=event_type, label=event_type, points=0)
        return rule

    def strict_rule(self, event_type: str) -> ScoringRule:
        try:
            return self._ruleset.scoring_rules[event_type]
        except KeyError:
            raise InvalidEventType(event_type) from None

    def badge(self, slug: str) -> BadgeDefinition | None:
        return self._badges.get(slug)

    def template(self, notification_type: str) -> NotificationTemplate | None:
        return self._ruleset.notification_templates.get(notification_type)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def _default_rules_path():
    return files("scorekeeper") / "data" / "rules.yaml"


def load_rules(
    path: str | Path | None = None,
    flag_overrides: Mapping[str, Any] | None = None,
) -> RuleStore:
    """Read and validate the rule tables.

    Parameters
    ----------
    path:
        YAML file to load.  Defaults to the packaged ``data/rules.yaml``.
    flag_overrides:
        Feature flag values that replace the file's defaults (typically from
        ``config.yaml``).

    Raises
    ------
    RuleConfigurationError
        If the YAML is malformed or fails validation.
    """
    source = Path(path) if path is not None else _default_rules_path()
    try:
        raw = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise RuleConfigurationError(f"Cannot read rules from {source}: {exc}") from exc
    return rules_from_mapping(raw, flag_overrides)


def rules_from_mapping(
    raw: Mapping[str, Any],
    flag_overrides: Mapping[str, Any] | None = None,
) -> RuleStore:
    data = dict(raw)
    if flag_overrides:
        data["feature_flags"] = {**(data.get("feature_flags") or {}), **flag_overrides}
    try:
        ruleset = RuleSet.model_validate(data)
    except ValidationError as exc:
        raise RuleConfigurationError(str(exc)) from exc
    logger.info(
        "Loaded %d scoring rules, %d badges, %d tasks",
        len(ruleset.scoring_rules), len(ruleset.badges), len(ruleset.tasks),
    )
    return RuleStore(ruleset)
