"""
canopy.constants — Shared Constants
====================================

Single source of truth for the currency and work activity tables.
Import from here instead of duplicating in services.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Currencies
# ---------------------------------------------------------------------------
class Currency(enum.StrEnum):
    """The two balances every account carries."""
    PRIMARY = "primary"
    RESTRICTED = "restricted"


# ---------------------------------------------------------------------------
# Work activities
# ---------------------------------------------------------------------------
class WorkActivity(enum.StrEnum):
    BUDTENDER = "budtender"
    GROWER = "grower"
    EDUCATOR = "educator"
    COMMUNITY_HELPER = "community_helper"


@dataclass(frozen=True, slots=True)
class WorkActivitySpec:
    base_reward: int
    restricted: bool  # needs verified 21+ access; also pays restricted currency


WORK_ACTIVITIES: dict[WorkActivity, WorkActivitySpec] = {
    WorkActivity.BUDTENDER: WorkActivitySpec(base_reward=80, restricted=True),
    WorkActivity.GROWER: WorkActivitySpec(base_reward=120, restricted=True),
    WorkActivity.EDUCATOR: WorkActivitySpec(base_reward=60, restricted=False),
    WorkActivity.COMMUNITY_HELPER: WorkActivitySpec(base_reward=40, restricted=False),
}
