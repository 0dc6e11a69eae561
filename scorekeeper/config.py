"""
scorekeeper.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for **deployment** settings: the local timezone,
streak grace allotment, journal retention and optional feature-flag
overrides.  Scoring rules, badges and tasks live in the rule tables
(:mod:`scorekeeper.engine.rules`), and ``DATABASE_URL`` comes from the
environment.

Usage::

    from scorekeeper.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.timezone)          # "Europe/Istanbul"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import yaml

from scorekeeper.engine.timewindow import DEFAULT_TIMEZONE


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScorekeeperConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    timezone: str = DEFAULT_TIMEZONE
    weekly_grace_days: int = 2
    event_retention_days: int = 90

    # Optional
    rules_path: str | None = None  # override for the bundled rules.yaml
    feature_flags: Mapping[str, bool | int] = field(default_factory=lambda: MappingProxyType({}))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ScorekeeperConfig:
    """Read *path* and return a :class:`ScorekeeperConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return ScorekeeperConfig(
        timezone=raw["timezone"],
        weekly_grace_days=int(raw.get("weekly_grace_days", 2)),
        event_retention_days=int(raw.get("event_retention_days", 90)),
        rules_path=raw.get("rules_path") or None,
        feature_flags=MappingProxyType(dict(raw.get("feature_flags") or {})),
    )
