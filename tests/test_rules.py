"""
tests/test_rules.py — Rule Store Loading & Validation
======================================================
"""

from __future__ import annotations

import copy
from importlib.resources import files

import pytest
import yaml

from scorekeeper.engine.rules import (
    DEFAULT_DYNAMIC_POINTS,
    SelectorPoints,
    load_rules,
    rules_from_mapping,
)
from scorekeeper.errors import InvalidEventType, RuleConfigurationError


@pytest.fixture
def raw_rules():
    """A mutable copy of the packaged rule tables."""
    text = (files("scorekeeper") / "data" / "rules.yaml").read_text(encoding="utf-8")
    return yaml.safe_load(text)


class TestPackagedRules:
    def test_loads_all_tables(self, rules):
        assert rules.is_known("login_success")
        assert len(rules.badges) == 11
        assert {t.slug for t in rules.tasks} >= {"daily_water", "weekly_4_exercise", "circle_300k_steps"}
        assert rules.streak_bonuses == {7: 10, 14: 25, 30: 50, 60: 100, 90: 150}

    def test_login_rule(self, rules):
        rule = rules.rule("login_success")
        assert rule.points == 2
        assert rule.daily_limit == 1
        assert rule.requires_streak is True
        assert rule.event_type == "login_success"

    def test_selector_points(self, rules):
        points = rules.rule("blog_points_claimed").points
        assert isinstance(points, SelectorPoints)
        assert points.resolve({"post_kind": "sticky"}) == 50
        assert points.resolve({"post_kind": "normal"}) == 10
        assert points.resolve({}) == 10
        assert points.resolve({"post_kind": "unheard-of"}) == 10

    def test_dynamic_rule(self, rules):
        assert rules.rule("exercise_completed").is_dynamic
        assert DEFAULT_DYNAMIC_POINTS == 10

    def test_unknown_event_degrades_to_zero_points(self, rules):
        rule = rules.rule("something_new")
        assert rule.points == 0
        assert rule.label == "something_new"
        assert rule.is_zero

    def test_strict_lookup_raises(self, rules):
        with pytest.raises(InvalidEventType):
            rules.strict_rule("something_new")

    def test_feature_flags_defaults(self, rules):
        assert rules.flags.is_enabled("enable_meal_photos")
        assert not rules.flags.is_enabled("enable_water_tracking")
        assert not rules.flags.enable_daily_score_cap
        assert rules.flags.daily_score_cap_value == 500

    def test_flag_overrides(self):
        rules = load_rules(flag_overrides={"enable_water_tracking": True, "daily_score_cap_value": 50})
        assert rules.flags.is_enabled("enable_water_tracking")
        assert rules.flags.daily_score_cap_value == 50

    def test_badge_goals(self, rules):
        assert rules.badge("comeback_kid").goal == 3
        assert rules.badge("circle_hero").goal == 1
        assert rules.badge("team_player").goal == 3
        assert rules.badge("water_keeper").goal == 14
        assert rules.badge("missing") is None

    def test_badge_triggers(self, rules):
        assert rules.badge("consistency_master").matches("login_success")
        assert rules.badge("motivator").matches("highfive_sent")
        assert rules.badge("motivator").matches("comment_created")
        assert not rules.badge("motivator").matches("login_success")


class TestTemplates:
    def test_render_fills_placeholders(self, rules):
        title, body = rules.template("streak_milestone").render({"streak": 7, "bonus": 10})
        assert title == "7 day streak milestone"
        assert "10 bonus points" in body

    def test_missing_placeholder_is_kept(self, rules):
        _, body = rules.template("new_follower").render({})
        assert body == "{actor_name} started following you."

    def test_unknown_template(self, rules):
        assert rules.template("nope") is None


class TestValidation:
    def test_unknown_flag_reference(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["scoring_rules"]["water_added"]["feature_flag"] = "enable_nothing"
        with pytest.raises(RuleConfigurationError, match="unknown flag"):
            rules_from_mapping(raw)

    def test_duplicate_badge_slug(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["badges"].append(copy.deepcopy(raw["badges"][0]))
        with pytest.raises(RuleConfigurationError, match="duplicate badge"):
            rules_from_mapping(raw)

    def test_task_links_unknown_badge(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["tasks"][0]["reward_badge_slug"] = "ghost"
        with pytest.raises(RuleConfigurationError, match="unknown badge"):
            rules_from_mapping(raw)

    def test_selector_default_must_exist(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["scoring_rules"]["blog_points_claimed"]["points"]["default"] = "gold"
        with pytest.raises(RuleConfigurationError):
            rules_from_mapping(raw)

    def test_unknown_condition_type(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["badges"][0]["condition"] = {"type": "MOON_PHASE"}
        with pytest.raises(RuleConfigurationError):
            rules_from_mapping(raw)

    def test_unknown_rule_field_rejected(self, raw_rules):
        raw = copy.deepcopy(raw_rules)
        raw["scoring_rules"]["login_success"]["pointz"] = 3
        with pytest.raises(RuleConfigurationError):
            rules_from_mapping(raw)

    def test_missing_file(self, tmp_path):
        with pytest.raises(RuleConfigurationError):
            load_rules(tmp_path / "nope.yaml")

    def test_load_from_path(self, tmp_path, raw_rules):
        path = tmp_path / "rules.yaml"
        raw_rules["scoring_rules"]["login_success"]["points"] = 4
        path.write_text(yaml.safe_dump(raw_rules), encoding="utf-8")
        assert load_rules(path).rule("login_success").points == 4
