"""
canopy.services.reward_service — Daily Claim & Work Cycles
===========================================================

Runs the recurring reward state machines against the ledger.  Every claim
is a single atomic unit:

  1. Lock (or lazily create) the account
  2. Reject with :class:`CooldownActive` while the window is open
  3. Quote the payout via :mod:`canopy.engine.rewards`
  4. Grant each currency through the ledger (one record per currency)
  5. Update streak / cooldown fields on the same row
  6. Commit, or on any failure roll back all of the above

The caller supplies the compliance answer (``restricted_granted``); this
module never decides access on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from canopy.constants import Currency, WorkActivity
from canopy.database.models import Account, OperationKind
from canopy.engine.ledger import LedgerOperation
from canopy.engine.rewards import (
    RewardState,
    cooldown_remaining,
    effective_daily_streak,
    quote_daily_reward,
    quote_work,
    reward_state,
)
from canopy.errors import CooldownActive
from canopy.services.account_service import get_or_create_account
from canopy.services.ledger_service import LedgerResult, apply_in_session

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from canopy.config import EconomySettings

logger = logging.getLogger(__name__)


@dataclass
class DailyRewardResult:
    primary: LedgerResult
    restricted: LedgerResult | None
    streak: int
    max_streak: int
    streak_reset: bool
    is_new_record: bool
    next_claim_at: datetime
    degraded: bool = False


@dataclass
class WorkResult:
    activity: WorkActivity
    primary: LedgerResult
    restricted: LedgerResult | None
    multiplier: float
    level_bonus: int
    streak: int
    next_work_at: datetime
    degraded: bool = False


@dataclass
class RewardStatus:
    daily_state: RewardState
    daily_retry_after: timedelta
    work_state: RewardState
    work_retry_after: timedelta
    daily_streak: int
    work_streak: int


def _restricted_grant(
    user_id: str, realm_id: str, kind: OperationKind, amount: int, description: str
) -> LedgerOperation:
    return LedgerOperation(
        user_id=user_id,
        realm_id=realm_id,
        kind=kind,
        amount=amount,
        description=description,
        currency=Currency.RESTRICTED,
        requires_restricted_access=True,
        involves_restricted_content=True,
        compliance_verified=True,
    )


# ---------------------------------------------------------------------------
# Daily claim
# ---------------------------------------------------------------------------
def claim_daily_reward(
    engine: Engine,
    settings: EconomySettings,
    user_id: str,
    realm_id: str,
    *,
    restricted_granted: bool = False,
    now: datetime | None = None,
) -> DailyRewardResult:
    """Claim the daily reward.  Raises :class:`CooldownActive` inside the window."""
    now = now or datetime.now(UTC)
    window = settings.daily_cooldown

    with Session(engine, expire_on_commit=False) as session:
        account = get_or_create_account(session, user_id, realm_id, settings, lock=True, now=now)

        remaining = cooldown_remaining(account.last_daily_claim_at, window, now)
        if remaining:
            raise CooldownActive("daily reward", remaining)

        streak = effective_daily_streak(
            account.daily_streak, account.last_daily_claim_at, window, now
        )
        streak_reset = streak != account.daily_streak
        quote = quote_daily_reward(streak, restricted_granted, settings)

        primary = apply_in_session(session, LedgerOperation(
            user_id=user_id,
            realm_id=realm_id,
            kind=OperationKind.DAILY_REWARD,
            amount=quote.primary,
            description=f"Daily reward (day {quote.new_streak})",
            metadata={"streak": quote.new_streak, "streak_bonus": quote.streak_bonus},
        ), now=now)

        restricted = None
        if quote.restricted:
            restricted = apply_in_session(session, _restricted_grant(
                user_id, realm_id, OperationKind.DAILY_REWARD, quote.restricted,
                f"Daily streak bonus (day {quote.new_streak})",
            ), now=now)

        previous_best = account.max_daily_streak
        account.daily_streak = quote.new_streak
        account.max_daily_streak = max(previous_best, quote.new_streak)
        account.last_daily_claim_at = now
        account.total_daily_claims += 1
        session.commit()

    if streak_reset:
        logger.info("Daily streak reset for user=%s realm=%s", user_id, realm_id)
    return DailyRewardResult(
        primary=primary,
        restricted=restricted,
        streak=quote.new_streak,
        max_streak=max(previous_best, quote.new_streak),
        streak_reset=streak_reset,
        is_new_record=quote.new_streak > previous_best,
        next_claim_at=now + window,
    )


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------
def perform_work(
    engine: Engine,
    settings: EconomySettings,
    user_id: str,
    realm_id: str,
    activity: WorkActivity | str,
    *,
    restricted_granted: bool = False,
    level: int = 1,
    now: datetime | None = None,
) -> WorkResult:
    """Complete one work shift.

    Restricted activities (budtender, grower) need ``restricted_granted``;
    without it :class:`ComplianceRequired` is raised before anything is
    written.
    """
    now = now or datetime.now(UTC)
    window = settings.work_cooldown

    with Session(engine, expire_on_commit=False) as session:
        account = get_or_create_account(session, user_id, realm_id, settings, lock=True, now=now)

        remaining = cooldown_remaining(account.last_work_at, window, now)
        if remaining:
            raise CooldownActive("work", remaining)

        quote = quote_work(activity, account.work_streak, level, restricted_granted, settings)

        primary = apply_in_session(session, LedgerOperation(
            user_id=user_id,
            realm_id=realm_id,
            kind=OperationKind.WORK_REWARD,
            amount=quote.primary,
            description=f"Work: {quote.activity}",
            requires_restricted_access=quote.restricted_activity,
            involves_restricted_content=quote.restricted_activity,
            compliance_verified=restricted_granted,
            metadata={
                "activity": quote.activity.value,
                "multiplier": quote.multiplier,
                "level_bonus": quote.level_bonus,
            },
        ), now=now)

        restricted = None
        if quote.restricted:
            restricted = apply_in_session(session, _restricted_grant(
                user_id, realm_id, OperationKind.WORK_REWARD, quote.restricted,
                f"Work bonus: {quote.activity}",
            ), now=now)

        meta = dict(account.metadata_ or {})
        counts = dict(meta.get("work_counts", {}))
        counts[quote.activity.value] = counts.get(quote.activity.value, 0) + 1
        meta["work_counts"] = counts

        account.work_streak = quote.new_streak
        account.last_work_at = now
        account.total_work_completed += 1
        account.favorite_work_kind = max(counts, key=counts.get)
        account.metadata_ = meta
        session.commit()

    return WorkResult(
        activity=quote.activity,
        primary=primary,
        restricted=restricted,
        multiplier=quote.multiplier,
        level_bonus=quote.level_bonus,
        streak=quote.new_streak,
        next_work_at=now + window,
    )


def get_reward_status(
    engine: Engine,
    settings: EconomySettings,
    user_id: str,
    realm_id: str,
    *,
    now: datetime | None = None,
) -> RewardStatus:
    """Where each reward cycle stands.  Read-only; does not create the account."""
    now = now or datetime.now(UTC)
    with Session(engine) as session:
        account = session.scalar(
            select(Account).where(Account.user_id == user_id, Account.realm_id == realm_id)
        )

    last_daily = account.last_daily_claim_at if account else None
    last_work = account.last_work_at if account else None
    daily_streak = 0
    if account is not None:
        daily_streak = effective_daily_streak(
            account.daily_streak, last_daily, settings.daily_cooldown, now
        )
    return RewardStatus(
        daily_state=reward_state(last_daily, settings.daily_cooldown, now),
        daily_retry_after=cooldown_remaining(last_daily, settings.daily_cooldown, now),
        work_state=reward_state(last_work, settings.work_cooldown, now),
        work_retry_after=cooldown_remaining(last_work, settings.work_cooldown, now),
        daily_streak=daily_streak,
        work_streak=account.work_streak if account else 0,
    )

