"""
canopy.services.account_service — Account Store
================================================

Accounts are created lazily: the first time any operation touches a
(user, realm) pair, :func:`get_or_create_account` inserts it with the
configured starting balance.  There is no other creation path, and
accounts are never deleted — only deactivated.

A starting balance above zero is also written to the ledger as an
``initial_grant`` transaction, so the sum of an account's transactions
always equals its balance.

Ranking and leaderboards are computed in SQL (ORDER BY / COUNT), never by
loading a realm's accounts into memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from canopy.constants import Currency
from canopy.database.engine import get_session
from canopy.database.models import (
    Account,
    AuditAction,
    LeaderboardKey,
    LedgerTransaction,
    OperationKind,
    TransactionStatus,
)
from canopy.engine.ledger import generate_reference_code
from canopy.errors import AccountNotFound
from canopy.services.audit_service import record_audit

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from canopy.config import EconomySettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    value: int
    primary_balance: int
    restricted_balance: int
    total_value: int
    daily_streak: int
    work_streak: int


# ---------------------------------------------------------------------------
# Lazy creation
# ---------------------------------------------------------------------------
def _account_query(user_id: str, realm_id: str, lock: bool):
    stmt = select(Account).where(Account.user_id == user_id, Account.realm_id == realm_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


def get_or_create_account(
    session: Session,
    user_id: str,
    realm_id: str,
    settings: EconomySettings,
    *,
    lock: bool = False,
    now: datetime | None = None,
) -> Account:
    """Fetch or insert the Account row for (user, realm).

    With ``lock=True`` the row is selected ``FOR UPDATE`` so the caller can
    read-modify-write it safely.  A concurrent first access that loses the
    insert race falls back to reading the winner's row.
    """
    account = session.scalar(_account_query(user_id, realm_id, lock))
    if account is not None:
        return account

    now = now or datetime.now(UTC)
    start = settings.starting_balance
    account = Account(
        user_id=user_id,
        realm_id=realm_id,
        primary_balance=start,
        primary_earned=start,
        total_transactions=1 if start > 0 else 0,
        metadata_={"starting_balance": start, "created_via": "lazy"},
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(account)
            session.flush()
    except IntegrityError:
        # Someone else created it between our SELECT and INSERT.
        account = session.scalar(_account_query(user_id, realm_id, lock))
        if account is None:
            raise
        return account

    if start > 0:
        session.add(LedgerTransaction(
            reference_code=generate_reference_code(),
            user_id=user_id,
            realm_id=realm_id,
            kind=OperationKind.INITIAL_GRANT.value,
            currency=Currency.PRIMARY.value,
            amount=start,
            description="Starting balance",
            balance_after=start,
            balance_snapshot=account.snapshot(),
            status=TransactionStatus.COMPLETED.value,
            initiated_at=now,
            completed_at=now,
            created_at=now,
        ))
    record_audit(
        session,
        realm_id=realm_id,
        action=AuditAction.ACCOUNT_CREATED,
        target_user_id=user_id,
        details={"starting_balance": start},
        now=now,
    )
    session.flush()
    logger.info("Created account user=%s realm=%s (start=%d)", user_id, realm_id, start)
    return account


def get_or_create(
    engine: Engine, user_id: str, realm_id: str, settings: EconomySettings
) -> Account:
    """Standalone unit of work around :func:`get_or_create_account`."""
    with get_session(engine) as session:
        return get_or_create_account(session, user_id, realm_id, settings)


def get_account(engine: Engine, user_id: str, realm_id: str) -> Account:
    with Session(engine) as session:
        account = session.scalar(_account_query(user_id, realm_id, lock=False))
    if account is None:
        raise AccountNotFound(f"No account for user {user_id} in realm {realm_id}")
    return account


def deactivate_account(
    engine: Engine,
    user_id: str,
    realm_id: str,
    *,
    actor_id: str | None = None,
    reason: str | None = None,
) -> Account:
    """Mark an account inactive.  Its rows and history are kept."""
    with get_session(engine) as session:
        account = session.scalar(_account_query(user_id, realm_id, lock=True))
        if account is None:
            raise AccountNotFound(f"No account for user {user_id} in realm {realm_id}")
        if account.is_active:
            account.is_active = False
            record_audit(
                session,
                realm_id=realm_id,
                action=AuditAction.ACCOUNT_DEACTIVATED,
                target_user_id=user_id,
                actor_id=actor_id,
                details={"reason": reason, "balances": account.snapshot()},
            )
            session.flush()
            logger.info("Deactivated account user=%s realm=%s", user_id, realm_id)
        return account


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------
def sort_expression(key: LeaderboardKey, restricted_multiplier: int):
    """SQL expression an account is ranked by for *key*."""
    match LeaderboardKey(key):
        case LeaderboardKey.TOTAL_VALUE:
            return Account.primary_balance + Account.restricted_balance * restricted_multiplier
        case LeaderboardKey.PRIMARY:
            return Account.primary_balance
        case LeaderboardKey.RESTRICTED:
            return Account.restricted_balance
        case LeaderboardKey.DAILY_STREAK:
            return Account.daily_streak
        case LeaderboardKey.WORK_STREAK:
            return Account.work_streak
        case LeaderboardKey.EARNED:
            return Account.primary_earned
        case LeaderboardKey.TRANSACTIONS:
            return Account.total_transactions


def rank(
    engine: Engine,
    user_id: str,
    realm_id: str,
    key: LeaderboardKey = LeaderboardKey.TOTAL_VALUE,
    *,
    restricted_multiplier: int = 10,
) -> int:
    """1 + number of active accounts in the realm strictly ahead of this one."""
    expr = sort_expression(key, restricted_multiplier)
    with Session(engine) as session:
        value = session.scalar(
            select(expr).where(Account.user_id == user_id, Account.realm_id == realm_id)
        )
        if value is None:
            raise AccountNotFound(f"No account for user {user_id} in realm {realm_id}")
        ahead = session.scalar(
            select(func.count())
            .select_from(Account)
            .where(
                Account.realm_id == realm_id,
                Account.is_active.is_(True),
                expr > value,
            )
        ) or 0
    return ahead + 1


def leaderboard(
    engine: Engine,
    realm_id: str,
    key: LeaderboardKey = LeaderboardKey.TOTAL_VALUE,
    limit: int = 10,
    *,
    restricted_multiplier: int = 10,
) -> list[LeaderboardEntry]:
    """Top *limit* active accounts.  Tied values share a rank."""
    expr = sort_expression(key, restricted_multiplier)
    with Session(engine) as session:
        rows = session.execute(
            select(Account, expr.label("value"))
            .where(Account.realm_id == realm_id, Account.is_active.is_(True))
            .order_by(expr.desc(), Account.primary_earned.desc(), Account.user_id.asc())
            .limit(limit)
        ).all()

    entries: list[LeaderboardEntry] = []
    for position, (account, value) in enumerate(rows, start=1):
        shared = entries and entries[-1].value == value
        entries.append(LeaderboardEntry(
            rank=entries[-1].rank if shared else position,
            user_id=account.user_id,
            value=int(value),
            primary_balance=account.primary_balance,
            restricted_balance=account.restricted_balance,
            total_value=account.total_value(restricted_multiplier),
            daily_streak=account.daily_streak,
            work_streak=account.work_streak,
        ))
    return entries


def get_realm_summary(engine: Engine, realm_id: str) -> dict:
    """Aggregate economy figures for a realm's active accounts."""
    with Session(engine) as session:
        row = session.execute(
            select(
                func.count(Account.id),
                func.coalesce(func.sum(Account.primary_balance), 0),
                func.coalesce(func.sum(Account.restricted_balance), 0),
                func.coalesce(func.sum(Account.total_transactions), 0),
                func.coalesce(func.avg(Account.daily_streak), 0),
                func.coalesce(func.max(Account.daily_streak), 0),
            ).where(Account.realm_id == realm_id, Account.is_active.is_(True))
        ).one()

    accounts, primary, restricted, transactions, avg_streak, best_streak = row
    return {
        "accounts": int(accounts),
        "primary_in_circulation": int(primary),
        "restricted_in_circulation": int(restricted),
        "total_transactions": int(transactions),
        "average_daily_streak": round(float(avg_streak), 2),
        "best_daily_streak": int(best_streak),
    }
