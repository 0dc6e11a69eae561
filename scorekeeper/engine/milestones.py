"""
scorekeeper.engine.milestones — Threshold Schedules
====================================================

Finds which bonus, if any, a cumulative counter has earned.  When the
counter jumps past several thresholds between checks only the highest one
is awarded; lower skipped thresholds are not paid out retroactively.
"""

from __future__ import annotations

from dataclasses import dataclass

from scorekeeper.engine.rules import MilestoneSchedule


@dataclass(frozen=True, slots=True)
class MilestoneAward:
    milestone_type: str
    target_entity_id: str
    milestone_value: int
    points: int
    awarded_to: int


def highest_threshold(schedule: MilestoneSchedule, value: int) -> tuple[int, int] | None:
    """Return ``(threshold, points)`` for the highest threshold ``<= value``.

    Beyond the last fixed threshold, every further multiple of
    ``repeat_every`` is a threshold worth ``repeat_points``.
    """
    fixed = [t for t in schedule.thresholds if t <= value]
    best = (max(fixed), schedule.thresholds[max(fixed)]) if fixed else None

    top_fixed = max(schedule.thresholds, default=0)
    step = schedule.repeat_every
    if step and value > top_fixed:
        repeat = (value // step) * step
        if repeat > top_fixed:
            best = (repeat, schedule.repeat_points)
    return best


def next_award(
    schedule: MilestoneSchedule,
    value: int,
    already_awarded: int | None,
) -> tuple[int, int] | None:
    """The threshold to award now, or ``None`` if nothing new was crossed."""
    found = highest_threshold(schedule, value)
    if found is None:
        return None
    if already_awarded is not None and found[0] <= already_awarded:
        return None
    return found
