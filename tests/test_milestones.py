"""
tests/test_milestones.py — Comment-Like Milestones
===================================================
"""

from __future__ import annotations

from sqlalchemy import func, select

from scorekeeper.constants import COMMENT_LIKES_MILESTONE
from scorekeeper.database.models import Milestone
from scorekeeper.engine.milestones import highest_threshold, next_award
from scorekeeper.engine.rules import MilestoneSchedule

SCHEDULE = MilestoneSchedule(
    thresholds={3: 1, 7: 1, 10: 2, 25: 2, 50: 5, 100: 5, 150: 5},
    repeat_every=50,
    repeat_points=5,
)


class TestSchedule:
    def test_below_first_threshold(self):
        assert highest_threshold(SCHEDULE, 2) is None

    def test_exact_threshold(self):
        assert highest_threshold(SCHEDULE, 3) == (3, 1)

    def test_jump_pays_highest_only(self):
        assert highest_threshold(SCHEDULE, 12) == (10, 2)

    def test_repeat_beyond_last_fixed(self):
        assert highest_threshold(SCHEDULE, 160) == (150, 5)
        assert highest_threshold(SCHEDULE, 200) == (200, 5)
        assert highest_threshold(SCHEDULE, 263) == (250, 5)

    def test_next_award_skips_already_awarded(self):
        assert next_award(SCHEDULE, 12, 10) is None
        assert next_award(SCHEDULE, 25, 10) == (25, 2)
        assert next_award(SCHEDULE, 12, None) == (10, 2)


class TestMilestoneEvaluator:
    def test_awards_highest_crossed(self, app):
        award = app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 12)
        assert award is not None
        assert award.milestone_value == 10
        assert award.points == 2
        assert award.awarded_to == 5
        assert app.score.get_scores(5).total_score == 2

    def test_same_threshold_not_repaid(self, app, db_session):
        app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 10)
        assert app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 11) is None
        count = db_session.scalar(select(func.count()).select_from(Milestone))
        assert count == 1
        assert app.score.get_scores(5).total_score == 2

    def test_each_comment_tracked_separately(self, app):
        app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 3)
        award = app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c2", 3)
        assert award is not None
        assert app.milestones.highest_awarded(5, COMMENT_LIKES_MILESTONE, "c2") == 3

    def test_repeat_threshold(self, app):
        app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 150)
        award = app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 200)
        assert award.milestone_value == 200
        assert award.points == 5

    def test_unknown_milestone_type(self, app):
        assert app.milestones.check_and_award(5, "page_views", "p1", 100) is None

    def test_below_first_threshold(self, app):
        assert app.milestones.check_and_award(5, COMMENT_LIKES_MILESTONE, "c1", 2) is None
        assert app.milestones.highest_awarded(5, COMMENT_LIKES_MILESTONE, "c1") is None
