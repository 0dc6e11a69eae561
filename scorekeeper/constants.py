"""
scorekeeper.constants — Shared Constants
=========================================

Event-type names and fixed sets consulted by more than one service.
Import from here instead of repeating string literals.
"""

from __future__ import annotations

# Streak type fed by the daily login event
DAILY_LOGIN_STREAK = "daily_login"

# Tasks are evaluated for these even when the event earned nothing
ALWAYS_EVALUATE_TASK_EVENTS: frozenset[str] = frozenset({
    "login_success",
    "exercise_completed",
    "diet_completed",
    # Goal events carry no points of their own; they exist to drive tasks
    "water_goal_reached",
    "nutrition_goal_reached",
    "mindful_exercise_completed",
})

# Events that add a unit of contribution to the user's circle tasks
CIRCLE_CONTRIBUTION_EVENTS: frozenset[str] = frozenset({
    "exercise_completed",
    "steps_logged",
})

# Event types whose author may differ from the acting user
CONTENT_COMPLETION_EVENTS: frozenset[str] = frozenset({
    "blog_points_claimed",
    "diet_completed",
    "exercise_completed",
})

# Synthetic events logged by the engine itself
STREAK_MILESTONE_EVENT = "streak_milestone"
COMMENT_LIKE_MILESTONE_EVENT = "comment_like_milestone"
TASK_COMPLETED_EVENT = "task_completed"
CIRCLE_TASK_COMPLETED_EVENT = "circle_task_completed"
BADGE_EARNED_EVENT = "badge_earned"

# Milestone type for comment likes
COMMENT_LIKES_MILESTONE = "comment_likes"

# Cascaded task completions feed back into task tracking at most this deep
MAX_TASK_CASCADE_DEPTH = 3

# Top-level payload keys copied into the merged event context
CONTEXT_PASSTHROUGH_KEYS: tuple[str, ...] = (
    "comment_id",
    "target_user_id",
    "follower_id",
    "followed_id",
    "circle_id",
    "rating",
)
