"""
canopy.engine.rewards — Daily Claim & Work Reward Quotes
=========================================================

Pure calculation for the two recurring reward cycles.
No DB I/O inside the engine; :mod:`canopy.services.reward_service` applies
the quotes through the ledger.

Each cycle is a two-state machine per account:

    eligible ──(successful claim)──▶ cooling-down ──(window elapses)──▶ eligible

Daily:
    payout      = base + min(streak × per_day, cap)
    restricted  = floor(streak / milestone) + 1        (verified accounts only)
    streak      → streak + 1, or restarts when more than two windows were missed

Work:
    multiplier  = min(1 + work_streak × step, multiplier_cap)
    payout      = floor(base(activity) × multiplier) + floor(level / 10) × 5
    restricted  = floor(payout / 20)                    (restricted activities only)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from canopy.constants import WORK_ACTIVITIES, WorkActivity
from canopy.errors import ComplianceRequired

if TYPE_CHECKING:
    from canopy.config import EconomySettings


class RewardState(enum.StrEnum):
    ELIGIBLE = "eligible"
    COOLING_DOWN = "cooling_down"


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes (SQLite hands those back) as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


# ---------------------------------------------------------------------------
# Cooldowns
# ---------------------------------------------------------------------------
def cooldown_remaining(
    last: datetime | None, window: timedelta, now: datetime
) -> timedelta:
    """Time left before the next claim; zero when eligible."""
    if last is None:
        return timedelta(0)
    remaining = as_utc(last) + window - as_utc(now)
    return max(remaining, timedelta(0))


def reward_state(last: datetime | None, window: timedelta, now: datetime) -> RewardState:
    if cooldown_remaining(last, window, now):
        return RewardState.COOLING_DOWN
    return RewardState.ELIGIBLE


def effective_daily_streak(
    streak: int, last: datetime | None, window: timedelta, now: datetime
) -> int:
    """The streak to build on; 0 when more than two windows passed since *last*."""
    if last is None:
        return streak
    if as_utc(now) - as_utc(last) > window * 2:
        return 0
    return streak


# ---------------------------------------------------------------------------
# Daily claim
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DailyRewardQuote:
    primary: int
    restricted: int
    streak_bonus: int
    new_streak: int


def quote_daily_reward(
    streak: int, restricted_granted: bool, settings: EconomySettings
) -> DailyRewardQuote:
    """Payout for a claim made with *streak* consecutive prior claims."""
    bonus = min(streak * settings.daily_streak_bonus_per_day, settings.daily_streak_bonus_cap)
    restricted = 0
    if restricted_granted:
        restricted = streak // settings.restricted_milestone_interval + 1
    return DailyRewardQuote(
        primary=settings.daily_base_reward + bonus,
        restricted=restricted,
        streak_bonus=bonus,
        new_streak=min(streak + 1, settings.max_daily_streak),
    )


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class WorkQuote:
    activity: WorkActivity
    primary: int
    restricted: int
    multiplier: float
    level_bonus: int
    new_streak: int
    restricted_activity: bool


def quote_work(
    activity: WorkActivity | str,
    work_streak: int,
    level: int,
    restricted_granted: bool,
    settings: EconomySettings,
) -> WorkQuote:
    """Payout for one work shift.

    Raises :class:`ComplianceRequired` for a restricted activity when the
    worker's restricted access isn't verified, and ``ValueError`` for an
    unknown activity.
    """
    activity = WorkActivity(activity)
    spec = WORK_ACTIVITIES[activity]
    if spec.restricted and not restricted_granted:
        raise ComplianceRequired(f"Work activity {activity} requires verified 21+ access")

    # Decimal keeps 1 + n × 0.1 exact before flooring.
    multiplier = min(
        Decimal(1) + Decimal(str(settings.work_streak_step)) * work_streak,
        Decimal(str(settings.work_streak_multiplier_cap)),
    )
    level_bonus = (level // settings.work_level_bonus_step) * settings.work_level_bonus_amount
    primary = int(spec.base_reward * multiplier) + level_bonus
    restricted = primary // settings.work_restricted_divisor if spec.restricted else 0

    return WorkQuote(
        activity=activity,
        primary=primary,
        restricted=restricted,
        multiplier=float(multiplier),
        level_bonus=level_bonus,
        new_streak=work_streak + 1,
        restricted_activity=spec.restricted,
    )
