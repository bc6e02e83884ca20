"""
canopy.config — YAML Configuration Loader
==========================================

**Why this file exists:**
Reward amounts, cooldown windows, connection back-off and retention windows
are all tunable per deployment.  They live in ``config.yaml``; secrets such
as ``DATABASE_URL`` stay in the environment (``.env``).

Every section is optional: a missing section or key falls back to the
defaults below, which mirror the values the community has been running with.

Usage::

    from canopy.config import configure_logging, load_config

    configure_logging()
    cfg = load_config()                       # reads ./config.yaml by default
    print(cfg.economy.daily_base_reward)      # 50
    print(cfg.persistence.max_connection_attempts)  # 5
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

LOG_FORMAT = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
LOG_DATEFMT = "%H:%M:%S"


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EconomySettings:
    """Reward and balance tuning for the ledger."""

    starting_balance: int = 100

    # Daily claim
    daily_cooldown_hours: float = 20
    daily_base_reward: int = 50
    daily_streak_bonus_per_day: int = 5
    daily_streak_bonus_cap: int = 100
    restricted_milestone_interval: int = 7
    max_daily_streak: int = 365

    # Work
    work_cooldown_hours: float = 4
    work_streak_step: float = 0.1
    work_streak_multiplier_cap: float = 2.0
    work_level_bonus_step: int = 10
    work_level_bonus_amount: int = 5
    work_restricted_divisor: int = 20

    # Leaderboard: one restricted unit is worth this many primary units
    restricted_value_multiplier: int = 10

    @property
    def daily_cooldown(self) -> timedelta:
        return timedelta(hours=self.daily_cooldown_hours)

    @property
    def work_cooldown(self) -> timedelta:
        return timedelta(hours=self.work_cooldown_hours)


@dataclass(frozen=True, slots=True)
class PersistenceSettings:
    """Connection, health-check and maintenance timing."""

    max_connection_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0
    reconnect_interval_seconds: float = 30.0
    health_check_interval_seconds: float = 60.0
    health_check_timeout_seconds: float = 5.0
    health_failure_threshold: int = 3
    maintenance_interval_seconds: float = 3600.0

    # Pool sizing (see canopy.database.engine.create_db_engine)
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 10
    pool_recycle: int = 3600

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (1-based) before the next one."""
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)


@dataclass(frozen=True, slots=True)
class RetentionSettings:
    """How long housekeeping keeps non-ledger rows around."""

    audit_log_days: int = 365
    status_snapshot_days: int = 30
    batch_size: int = 5_000


@dataclass(frozen=True, slots=True)
class CanopyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    economy: EconomySettings = field(default_factory=EconomySettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _build(cls: type, raw: dict[str, Any] | None, section: str):
    """Instantiate a settings dataclass from a (possibly partial) mapping."""
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise KeyError(
            f"Unknown key(s) in '{section}' section: {', '.join(sorted(unknown))}"
        )
    return cls(**raw)


def load_config(path: str | Path = "config.yaml") -> CanopyConfig:
    """Read *path* and return a :class:`CanopyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a section contains a key canopy doesn't know about (usually a typo).
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return CanopyConfig(
        economy=_build(EconomySettings, raw.get("economy"), "economy"),
        persistence=_build(PersistenceSettings, raw.get("persistence"), "persistence"),
        retention=_build(RetentionSettings, raw.get("retention"), "retention"),
    )


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install the project-wide log format on the root logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    # SQLAlchemy's INFO output is per-statement; keep it out of normal logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
