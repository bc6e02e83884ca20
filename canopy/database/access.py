"""
canopy.database.access — Live and Degraded Data Accessors
==========================================================

The persistence manager hands out exactly one :class:`DataAccess` at a
time.  While the database is reachable that is :class:`LiveDataAccess`,
which delegates to the service modules.  While it isn't, the manager swaps
in :class:`DegradedDataAccess`: every read returns an empty/zero stand-in,
every write is validated and then becomes a logged no-op, and nothing
raises for storage reasons.

Callers must fetch ``manager.access`` on every call rather than keeping a
reference; the instance changes when the manager degrades or recovers.

All methods are synchronous; async callers go through ``run_db``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from canopy.constants import Currency, WorkActivity
from canopy.database.models import Account, LeaderboardKey, LedgerTransaction, OperationKind
from canopy.engine.ledger import validate_operation, validate_transfer
from canopy.engine.rewards import RewardState, quote_work
from canopy.services import account_service, ledger_service, reward_service
from canopy.services.ledger_service import LedgerResult, TransferResult
from canopy.services.reward_service import DailyRewardResult, RewardStatus, WorkResult

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from canopy.config import EconomySettings
    from canopy.engine.ledger import LedgerOperation
    from canopy.services.account_service import LeaderboardEntry

logger = logging.getLogger(__name__)


class DataAccess(ABC):
    """Everything the public facade can ask of the store."""

    live: bool

    def __init__(self, settings: EconomySettings) -> None:
        self.settings = settings

    # --- accounts ---
    @abstractmethod
    def get_or_create(self, user_id: str, realm_id: str) -> Account: ...

    @abstractmethod
    def get_account(self, user_id: str, realm_id: str) -> Account: ...

    @abstractmethod
    def deactivate(
        self, user_id: str, realm_id: str, *, actor_id: str | None = None,
        reason: str | None = None,
    ) -> Account: ...

    @abstractmethod
    def rank(self, user_id: str, realm_id: str, key: LeaderboardKey) -> int: ...

    @abstractmethod
    def leaderboard(
        self, realm_id: str, key: LeaderboardKey, limit: int
    ) -> list[LeaderboardEntry]: ...

    @abstractmethod
    def realm_summary(self, realm_id: str) -> dict: ...

    # --- ledger ---
    @abstractmethod
    def apply(self, op: LedgerOperation, *, now: datetime | None = None) -> LedgerResult: ...

    @abstractmethod
    def transfer_or_gift(self, **kwargs) -> TransferResult: ...

    @abstractmethod
    def purchase(self, **kwargs) -> LedgerResult: ...

    @abstractmethod
    def admin_adjust(self, **kwargs) -> LedgerResult: ...

    @abstractmethod
    def reverse(
        self, reference_code: str, *, actor_id: str, reason: str = "",
        now: datetime | None = None,
    ) -> list[LedgerResult]: ...

    @abstractmethod
    def history(
        self, user_id: str, realm_id: str, *, limit: int = 50, offset: int = 0,
        kind: OperationKind | None = None, currency: Currency | None = None,
    ) -> list[LedgerTransaction]: ...

    @abstractmethod
    def transaction_stats(self, user_id: str, realm_id: str, *, days: int = 30) -> dict: ...

    @abstractmethod
    def find_by_reference(self, reference_code: str) -> LedgerTransaction | None: ...

    # --- rewards ---
    @abstractmethod
    def claim_daily_reward(
        self, user_id: str, realm_id: str, *, restricted_granted: bool,
        now: datetime | None = None,
    ) -> DailyRewardResult: ...

    @abstractmethod
    def perform_work(
        self, user_id: str, realm_id: str, activity: WorkActivity, *,
        restricted_granted: bool, level: int = 1, now: datetime | None = None,
    ) -> WorkResult: ...

    @abstractmethod
    def reward_status(
        self, user_id: str, realm_id: str, *, now: datetime | None = None
    ) -> RewardStatus: ...


# ---------------------------------------------------------------------------
# Live
# ---------------------------------------------------------------------------
class LiveDataAccess(DataAccess):
    live = True

    def __init__(self, engine: Engine, settings: EconomySettings) -> None:
        super().__init__(settings)
        self.engine = engine

    def get_or_create(self, user_id, realm_id):
        return account_service.get_or_create(self.engine, user_id, realm_id, self.settings)

    def get_account(self, user_id, realm_id):
        return account_service.get_account(self.engine, user_id, realm_id)

    def deactivate(self, user_id, realm_id, *, actor_id=None, reason=None):
        return account_service.deactivate_account(
            self.engine, user_id, realm_id, actor_id=actor_id, reason=reason
        )

    def rank(self, user_id, realm_id, key):
        return account_service.rank(
            self.engine, user_id, realm_id, key,
            restricted_multiplier=self.settings.restricted_value_multiplier,
        )

    def leaderboard(self, realm_id, key, limit):
        return account_service.leaderboard(
            self.engine, realm_id, key, limit,
            restricted_multiplier=self.settings.restricted_value_multiplier,
        )

    def realm_summary(self, realm_id):
        return account_service.get_realm_summary(self.engine, realm_id)

    def apply(self, op, *, now=None):
        return ledger_service.apply(self.engine, op, settings=self.settings, now=now)

    def transfer_or_gift(self, **kwargs):
        return ledger_service.transfer_or_gift(self.engine, self.settings, **kwargs)

    def purchase(self, **kwargs):
        return ledger_service.purchase(self.engine, self.settings, **kwargs)

    def admin_adjust(self, **kwargs):
        return ledger_service.admin_adjust(self.engine, self.settings, **kwargs)

    def reverse(self, reference_code, *, actor_id, reason="", now=None):
        return ledger_service.reverse_transaction(
            self.engine, reference_code=reference_code, actor_id=actor_id, reason=reason, now=now,
        )

    def history(self, user_id, realm_id, *, limit=50, offset=0, kind=None, currency=None):
        return ledger_service.get_history(
            self.engine, user_id, realm_id, limit=limit, offset=offset, kind=kind, currency=currency,
        )

    def transaction_stats(self, user_id, realm_id, *, days=30):
        return ledger_service.get_transaction_stats(self.engine, user_id, realm_id, days=days)

    def find_by_reference(self, reference_code):
        return ledger_service.find_by_reference(self.engine, reference_code)

    def claim_daily_reward(self, user_id, realm_id, *, restricted_granted, now=None):
        return reward_service.claim_daily_reward(
            self.engine, self.settings, user_id, realm_id,
            restricted_granted=restricted_granted, now=now,
        )

    def perform_work(self, user_id, realm_id, activity, *, restricted_granted, level=1, now=None):
        return reward_service.perform_work(
            self.engine, self.settings, user_id, realm_id, activity,
            restricted_granted=restricted_granted, level=level, now=now,
        )

    def reward_status(self, user_id, realm_id, *, now=None):
        return reward_service.get_reward_status(
            self.engine, self.settings, user_id, realm_id, now=now
        )


# ---------------------------------------------------------------------------
# Degraded
# ---------------------------------------------------------------------------
class DegradedDataAccess(DataAccess):
    """Stand-ins used while the database is unreachable.

    Writes still run the pure checks first, so a request that would be
    rejected live (bad amount, self-transfer, missing compliance) raises
    here too.  Only storage errors are suppressed.
    """

    live = False

    @staticmethod
    def _skipped_write(name: str, **context) -> None:
        logger.warning("Degraded mode: %s skipped %s", name, context)

    @staticmethod
    def _stub_result(currency: Currency | str = Currency.PRIMARY) -> LedgerResult:
        return LedgerResult(
            transaction=None, new_balance=0, currency=Currency(currency), degraded=True
        )

    def get_or_create(self, user_id, realm_id):
        logger.info("Degraded mode: returning blank account for user=%s", user_id)
        return Account.blank(user_id, realm_id)

    def get_account(self, user_id, realm_id):
        return Account.blank(user_id, realm_id)

    def deactivate(self, user_id, realm_id, *, actor_id=None, reason=None):
        self._skipped_write("deactivate", user_id=user_id, realm_id=realm_id)
        return Account.blank(user_id, realm_id)

    def rank(self, user_id, realm_id, key):
        return 0

    def leaderboard(self, realm_id, key, limit):
        return []

    def realm_summary(self, realm_id):
        return {
            "accounts": 0,
            "primary_in_circulation": 0,
            "restricted_in_circulation": 0,
            "total_transactions": 0,
            "average_daily_streak": 0.0,
            "best_daily_streak": 0,
        }

    def apply(self, op, *, now=None):
        validate_operation(op)
        self._skipped_write("apply", user_id=op.user_id, kind=str(op.kind), amount=op.amount)
        return self._stub_result(op.currency)

    def transfer_or_gift(self, **kwargs):
        validate_transfer(
            kwargs.get("sender_id"),
            kwargs.get("recipient_id"),
            kwargs.get("amount"),
            kwargs.get("currency", Currency.PRIMARY),
            involves_restricted_content=kwargs.get("involves_restricted_content", False),
            sender_verified=kwargs.get("sender_verified", False),
            recipient_verified=kwargs.get("recipient_verified", False),
        )
        self._skipped_write(
            "transfer_or_gift",
            sender_id=kwargs.get("sender_id"),
            recipient_id=kwargs.get("recipient_id"),
            amount=kwargs.get("amount"),
        )
        currency = kwargs.get("currency", Currency.PRIMARY)
        return TransferResult(debit=self._stub_result(currency), credit=self._stub_result(currency))

    def purchase(self, **kwargs):
        ledger_service.build_purchase(**kwargs)
        self._skipped_write(
            "purchase", user_id=kwargs.get("user_id"), item=kwargs.get("item_reference"),
        )
        return self._stub_result(kwargs.get("currency", Currency.PRIMARY))

    def admin_adjust(self, **kwargs):
        ledger_service.build_adjustment(**kwargs)
        self._skipped_write(
            "admin_adjust", user_id=kwargs.get("user_id"), amount=kwargs.get("amount"),
        )
        return self._stub_result(kwargs.get("currency", Currency.PRIMARY))

    def reverse(self, reference_code, *, actor_id, reason="", now=None):
        self._skipped_write("reverse", reference_code=reference_code)
        return []

    def history(self, user_id, realm_id, *, limit=50, offset=0, kind=None, currency=None):
        return []

    def transaction_stats(self, user_id, realm_id, *, days=30):
        zero = {c.value: 0 for c in Currency}
        return {
            "period_days": days,
            "total_transactions": 0,
            "by_kind": {},
            "total_in": dict(zero),
            "total_out": dict(zero),
        }

    def find_by_reference(self, reference_code):
        return None

    def claim_daily_reward(self, user_id, realm_id, *, restricted_granted, now=None):
        self._skipped_write("claim_daily_reward", user_id=user_id, realm_id=realm_id)
        return DailyRewardResult(
            primary=self._stub_result(),
            restricted=None,
            streak=0,
            max_streak=0,
            streak_reset=False,
            is_new_record=False,
            next_claim_at=now or datetime.now(UTC),
            degraded=True,
        )

    def perform_work(self, user_id, realm_id, activity, *, restricted_granted, level=1, now=None):
        quote_work(activity, 0, level, restricted_granted, self.settings)
        self._skipped_write("perform_work", user_id=user_id, activity=str(activity))
        return WorkResult(
            activity=WorkActivity(activity),
            primary=self._stub_result(),
            restricted=None,
            multiplier=1.0,
            level_bonus=0,
            streak=0,
            next_work_at=now or datetime.now(UTC),
            degraded=True,
        )

    def reward_status(self, user_id, realm_id, *, now=None):
        return RewardStatus(
            daily_state=RewardState.ELIGIBLE,
            daily_retry_after=timedelta(0),
            work_state=RewardState.ELIGIBLE,
            work_retry_after=timedelta(0),
            daily_streak=0,
            work_streak=0,
        )
