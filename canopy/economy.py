"""
canopy.economy — Public Async Surface
======================================

The single entry point a presentation layer (chat bot, web API, …) talks
to.  Every method:

    1. Fetches ``manager.access`` at call time — never a cached accessor,
       so degraded mode and recovery take effect immediately.
    2. Asks the :class:`ComplianceCheck` whenever the request touches
       restricted content or the restricted currency.  The answer is never
       cached and never taken from the caller.
    3. Ships the synchronous unit of work through :func:`run_db`.

Errors from :mod:`canopy.errors` propagate unchanged.

Usage::

    economy = Economy(manager, compliance=my_age_gate)
    result = await economy.claim_daily_reward("42", "realm-1")
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from canopy.constants import Currency, WorkActivity
from canopy.database.engine import run_db
from canopy.database.models import LeaderboardKey

if TYPE_CHECKING:
    from canopy.config import EconomySettings
    from canopy.database.manager import PersistenceManager, PersistenceStatus
    from canopy.database.models import Account, LedgerTransaction, OperationKind
    from canopy.engine.ledger import LedgerOperation
    from canopy.services.account_service import LeaderboardEntry
    from canopy.services.ledger_service import LedgerResult, TransferResult
    from canopy.services.reward_service import DailyRewardResult, RewardStatus, WorkResult

logger = logging.getLogger(__name__)


class ComplianceCheck(Protocol):
    """Answers whether a user may access restricted content in a realm."""

    def is_restricted_access_granted(self, user_id: str, realm_id: str) -> bool: ...


class Economy:
    def __init__(
        self,
        manager: PersistenceManager,
        compliance: ComplianceCheck,
        settings: EconomySettings | None = None,
    ) -> None:
        self.manager = manager
        self.compliance = compliance
        self.settings = settings or manager.economy

    def _granted(self, user_id: str, realm_id: str) -> bool:
        granted = bool(self.compliance.is_restricted_access_granted(user_id, realm_id))
        if not granted:
            logger.info("Restricted access not granted for user=%s realm=%s", user_id, realm_id)
        return granted

    def get_status(self) -> PersistenceStatus:
        return self.manager.get_status()

    # -------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------
    async def get_or_create(self, user_id: str, realm_id: str) -> Account:
        return await run_db(self.manager.access.get_or_create, user_id, realm_id)

    async def get_account(self, user_id: str, realm_id: str) -> Account:
        return await run_db(self.manager.access.get_account, user_id, realm_id)

    async def deactivate(
        self, user_id: str, realm_id: str, *, actor_id: str | None = None,
        reason: str | None = None,
    ) -> Account:
        return await run_db(
            self.manager.access.deactivate, user_id, realm_id, actor_id=actor_id, reason=reason
        )

    async def rank(
        self, user_id: str, realm_id: str, key: LeaderboardKey = LeaderboardKey.TOTAL_VALUE
    ) -> int:
        return await run_db(self.manager.access.rank, user_id, realm_id, LeaderboardKey(key))

    async def leaderboard(
        self, realm_id: str, key: LeaderboardKey = LeaderboardKey.TOTAL_VALUE, limit: int = 10
    ) -> list[LeaderboardEntry]:
        return await run_db(self.manager.access.leaderboard, realm_id, LeaderboardKey(key), limit)

    async def realm_summary(self, realm_id: str) -> dict:
        return await run_db(self.manager.access.realm_summary, realm_id)

    # -------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------
    async def apply(self, op: LedgerOperation) -> LedgerResult:
        """Apply one operation.  Compliance is decided here, not by *op*."""
        if op.needs_compliance:
            op = op.with_compliance(self._granted(op.user_id, op.realm_id))
        return await run_db(self.manager.access.apply, op)

    async def transfer_or_gift(
        self,
        sender_id: str,
        recipient_id: str,
        realm_id: str,
        amount: int,
        *,
        currency: Currency = Currency.PRIMARY,
        note: str = "",
        gift: bool = True,
        involves_restricted_content: bool = False,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        sender_verified = recipient_verified = False
        if involves_restricted_content or currency == Currency.RESTRICTED:
            sender_verified = self._granted(sender_id, realm_id)
            recipient_verified = self._granted(recipient_id, realm_id)
        return await run_db(
            self.manager.access.transfer_or_gift,
            sender_id=sender_id,
            recipient_id=recipient_id,
            realm_id=realm_id,
            amount=amount,
            currency=currency,
            note=note,
            gift=gift,
            involves_restricted_content=involves_restricted_content,
            sender_verified=sender_verified,
            recipient_verified=recipient_verified,
            idempotency_key=idempotency_key,
        )

    async def purchase(
        self,
        user_id: str,
        realm_id: str,
        item_reference: str,
        price: int,
        *,
        currency: Currency = Currency.PRIMARY,
        quantity: int = 1,
        restricted_item: bool = False,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        verified = False
        if restricted_item or currency == Currency.RESTRICTED:
            verified = self._granted(user_id, realm_id)
        return await run_db(
            self.manager.access.purchase,
            user_id=user_id,
            realm_id=realm_id,
            item_reference=item_reference,
            price=price,
            currency=currency,
            quantity=quantity,
            restricted_item=restricted_item,
            compliance_verified=verified,
            description=description,
            idempotency_key=idempotency_key,
        )

    async def admin_adjust(
        self,
        actor_id: str,
        user_id: str,
        realm_id: str,
        amount: int,
        *,
        currency: Currency = Currency.PRIMARY,
        reason: str = "",
    ) -> LedgerResult:
        verified = currency == Currency.RESTRICTED and self._granted(user_id, realm_id)
        return await run_db(
            self.manager.access.admin_adjust,
            actor_id=actor_id,
            user_id=user_id,
            realm_id=realm_id,
            amount=amount,
            currency=currency,
            reason=reason,
            compliance_verified=verified,
        )

    async def reverse(
        self, reference_code: str, *, actor_id: str, reason: str = ""
    ) -> list[LedgerResult]:
        return await run_db(
            self.manager.access.reverse, reference_code, actor_id=actor_id, reason=reason
        )

    async def history(
        self,
        user_id: str,
        realm_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: OperationKind | None = None,
        currency: Currency | None = None,
    ) -> list[LedgerTransaction]:
        return await run_db(
            self.manager.access.history, user_id, realm_id,
            limit=limit, offset=offset, kind=kind, currency=currency,
        )

    async def transaction_stats(self, user_id: str, realm_id: str, *, days: int = 30) -> dict:
        return await run_db(self.manager.access.transaction_stats, user_id, realm_id, days=days)

    async def find_by_reference(self, reference_code: str) -> LedgerTransaction | None:
        return await run_db(self.manager.access.find_by_reference, reference_code)

    # -------------------------------------------------------------------
    # Rewards
    # -------------------------------------------------------------------
    async def claim_daily_reward(
        self, user_id: str, realm_id: str, *, now: datetime | None = None
    ) -> DailyRewardResult:
        granted = self._granted(user_id, realm_id)
        return await run_db(
            self.manager.access.claim_daily_reward, user_id, realm_id,
            restricted_granted=granted, now=now,
        )

    async def perform_work(
        self,
        user_id: str,
        realm_id: str,
        activity: WorkActivity | str,
        *,
        level: int = 1,
        now: datetime | None = None,
    ) -> WorkResult:
        granted = self._granted(user_id, realm_id)
        return await run_db(
            self.manager.access.perform_work, user_id, realm_id, activity,
            restricted_granted=granted, level=level, now=now,
        )

    async def reward_status(
        self, user_id: str, realm_id: str, *, now: datetime | None = None
    ) -> RewardStatus:
        return await run_db(self.manager.access.reward_status, user_id, realm_id, now=now)
