"""
Scorekeeper — Gamification & Scoring Engine
============================================
Turns typed user actions into points, streaks, milestones, task progress
and badges, awarding each logical action exactly once even under
concurrent requests.  Embedded by a host platform that supplies identity,
content and notification delivery.

Package layout::

    scorekeeper/
    ├── config.py          # YAML → typed deployment config
    ├── bootstrap.py       # Composition root
    ├── collaborators.py   # Host-side protocols (identity, content, sink)
    ├── data/rules.yaml    # Scoring rules, badges, tasks, templates
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Static task definition seeder
    ├── engine/            # Pure logic, no I/O
    │   ├── rules.py       # Validated rule tables (RuleStore)
    │   ├── idempotency.py # Ledger key builders
    │   ├── timewindow.py  # Local day / week / month boundaries
    │   ├── streaks.py     # Streak transitions
    │   ├── milestones.py  # Threshold schedules
    │   ├── badges.py      # Badge condition handlers
    │   └── notifications.py # Event → notification mapping
    └── services/
        ├── dispatcher.py  # Event dispatch pipeline
        ├── score_service.py # Eligibility + award path
        └── ...            # Ledger, journal, streaks, tasks, badges, jobs
"""

__version__ = "0.1.0"
