"""
canopy.services.ledger_service — Atomic Balance Mutation
=========================================================

The only code path that changes a balance.  One call of
:func:`apply_in_session` is one ledger step:

  1. Validate the operation (amount, counterparty, compliance)
  2. Lock the account row (``SELECT … FOR UPDATE``)
  3. Guarded UPDATE: ``balance = balance - :amount WHERE balance >= :amount``
     — the database, not a previously read snapshot, decides whether the
     debit fits, so two concurrent debits can never overdraw
  4. Insert the completed, immutable ``ledger_transactions`` row carrying
     the post-update balance snapshot
  5. Restricted movements also get a compliance ``audit_log`` row

``apply_in_session`` never commits.  Callers that need several steps in one
atomic unit (gifts, rewards, reversals) run them in one session and commit
once; any exception discards every step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from canopy.constants import Currency
from canopy.database.models import (
    Account,
    AuditAction,
    LedgerTransaction,
    OperationKind,
    TransactionStatus,
)
from canopy.engine.ledger import (
    DIRECTION,
    REVERSAL_KIND,
    Direction,
    LedgerOperation,
    check_funds,
    generate_reference_code,
    validate_operation,
    validate_transfer,
)
from canopy.errors import (
    AccountInactive,
    AccountNotFound,
    AlreadyReversed,
    IdempotencyConflict,
    InsufficientFunds,
    InvalidAmount,
    TransactionNotFound,
)
from canopy.services.account_service import get_or_create_account
from canopy.services.audit_service import record_audit

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from canopy.config import EconomySettings

logger = logging.getLogger(__name__)

# (balance, earned, spent) attribute names per currency
_BALANCE_COLUMNS: dict[Currency, tuple[str, str, str]] = {
    Currency.PRIMARY: ("primary_balance", "primary_earned", "primary_spent"),
    Currency.RESTRICTED: ("restricted_balance", "restricted_earned", "restricted_spent"),
}

_LIFETIME_COUNTERS: dict[OperationKind, str] = {
    OperationKind.PURCHASE: "total_purchases",
    OperationKind.GIFT_OUT: "gifts_sent",
    OperationKind.GIFT_IN: "gifts_received",
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass
class LedgerResult:
    """Outcome of one ledger step."""

    transaction: LedgerTransaction | None
    new_balance: int
    currency: Currency
    replayed: bool = False   # idempotency key matched an earlier request
    degraded: bool = False   # stand-in produced while the store is unavailable


@dataclass
class TransferResult:
    debit: LedgerResult
    credit: LedgerResult

    @property
    def correlation_ref(self) -> str | None:
        if self.debit.transaction is None:
            return None
        return self.debit.transaction.correlation_ref

    @property
    def sender_balance(self) -> int:
        return self.debit.new_balance

    @property
    def recipient_balance(self) -> int:
        return self.credit.new_balance

    @property
    def degraded(self) -> bool:
        return self.debit.degraded


def _replay(txn: LedgerTransaction) -> LedgerResult:
    return LedgerResult(
        transaction=txn,
        new_balance=txn.balance_after,
        currency=Currency(txn.currency),
        replayed=True,
    )


def _replay_matching(txn: LedgerTransaction, op: LedgerOperation) -> LedgerResult:
    """Replay *txn* for *op*, or raise if the key was used for something else."""
    same = (
        txn.kind == OperationKind(op.kind).value
        and txn.amount == op.amount
        and txn.currency == Currency(op.currency).value
        and txn.item_reference == op.item_reference
        and txn.counterparty_user_id == op.counterparty_user_id
    )
    if not same:
        raise IdempotencyConflict(
            f"Idempotency key {op.idempotency_key!r} was already used for "
            f"{txn.kind} {txn.amount} {txn.currency} ({txn.reference_code})"
        )
    return _replay(txn)


# ---------------------------------------------------------------------------
# The ledger step
# ---------------------------------------------------------------------------
def _load_account(session: Session, user_id: str, realm_id: str) -> Account:
    account = session.scalar(
        select(Account)
        .where(Account.user_id == user_id, Account.realm_id == realm_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if account is None:
        raise AccountNotFound(f"No account for user {user_id} in realm {realm_id}")
    if not account.is_active:
        raise AccountInactive(f"Account for user {user_id} in realm {realm_id} is inactive")
    return account


def apply_in_session(
    session: Session,
    op: LedgerOperation,
    *,
    now: datetime | None = None,
    correlation_ref: str | None = None,
    reverses_transaction_id: str | None = None,
) -> LedgerResult:
    """Apply *op* inside the caller's transaction.  Does not commit.

    Raises :class:`InvalidAmount`, :class:`InvalidCounterparty`,
    :class:`ComplianceRequired`, :class:`AccountNotFound` or
    :class:`InsufficientFunds` before anything is written.
    """
    validate_operation(op)
    now = now or datetime.now(UTC)
    currency = Currency(op.currency)
    kind = OperationKind(op.kind)

    account = _load_account(session, op.user_id, op.realm_id)
    check_funds(op, account.balance(currency))

    balance_col, earned_col, spent_col = _BALANCE_COLUMNS[currency]
    balance = getattr(Account, balance_col)
    values = {"total_transactions": Account.total_transactions + 1}
    stmt = update(Account).where(Account.id == account.id)
    if op.is_debit:
        stmt = stmt.where(balance >= op.amount)
        values[balance_col] = balance - op.amount
        values[spent_col] = getattr(Account, spent_col) + op.amount
    else:
        values[balance_col] = balance + op.amount
        values[earned_col] = getattr(Account, earned_col) + op.amount
    counter = _LIFETIME_COUNTERS.get(kind)
    if counter is not None:
        values[counter] = getattr(Account, counter) + 1

    result = session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    session.refresh(account)
    if result.rowcount != 1:
        # Balance moved between our read and the guarded write.
        raise InsufficientFunds(str(currency), account.balance(currency), op.amount)

    new_balance = account.balance(currency)
    txn = LedgerTransaction(
        reference_code=generate_reference_code(),
        user_id=op.user_id,
        realm_id=op.realm_id,
        counterparty_user_id=op.counterparty_user_id,
        kind=kind.value,
        currency=currency.value,
        amount=op.amount,
        description=op.description,
        item_reference=op.item_reference,
        correlation_ref=correlation_ref,
        idempotency_key=op.idempotency_key,
        requires_restricted_access=op.requires_restricted_access,
        involves_restricted_content=op.involves_restricted_content,
        compliance_verified=op.compliance_verified,
        balance_after=new_balance,
        balance_snapshot=account.snapshot(),
        status=TransactionStatus.COMPLETED.value,
        reverses_transaction_id=reverses_transaction_id,
        processed_by=op.processed_by,
        metadata_=dict(op.metadata) or None,
        initiated_at=now,
        completed_at=now,
        created_at=now,
    )
    session.add(txn)

    if op.needs_compliance:
        record_audit(
            session,
            realm_id=op.realm_id,
            action=AuditAction.RESTRICTED_TRANSACTION,
            target_user_id=op.user_id,
            actor_id=op.processed_by,
            details={
                "reference_code": txn.reference_code,
                "kind": kind.value,
                "currency": currency.value,
                "amount": op.amount,
            },
            compliance_flag=True,
            now=now,
        )

    session.flush()
    logger.debug(
        "Ledger %s %s %d %s → balance %d (%s)",
        op.direction, kind, op.amount, currency, new_balance, txn.reference_code,
    )
    return LedgerResult(transaction=txn, new_balance=new_balance, currency=currency)


def apply(
    engine: Engine,
    op: LedgerOperation,
    *,
    settings: EconomySettings | None = None,
    now: datetime | None = None,
) -> LedgerResult:
    """Apply a single operation as its own atomic unit.

    With *settings* the account is created on first use; without them a
    missing account raises :class:`AccountNotFound`.

    An operation carrying an ``idempotency_key`` that was already applied to
    the same account returns the stored result (``replayed=True``) without
    touching any balance.
    """
    if op.idempotency_key:
        existing = find_by_idempotency_key(engine, op.user_id, op.realm_id, op.idempotency_key)
        if existing is not None:
            return _replay_matching(existing, op)

    try:
        with Session(engine, expire_on_commit=False) as session:
            validate_operation(op)
            if settings is not None:
                get_or_create_account(session, op.user_id, op.realm_id, settings, now=now)
            result = apply_in_session(session, op, now=now)
            session.commit()
            return result
    except IntegrityError:
        if op.idempotency_key:
            # Lost a race with an identical request; report the winner.
            existing = find_by_idempotency_key(
                engine, op.user_id, op.realm_id, op.idempotency_key
            )
            if existing is not None:
                return _replay_matching(existing, op)
        raise


# ---------------------------------------------------------------------------
# Composite operations
# ---------------------------------------------------------------------------
def _replay_transfer(
    engine: Engine, debit_op: LedgerOperation, credit_op: LedgerOperation
) -> TransferResult | None:
    """Both stored legs for the sender's idempotency key, or ``None`` if unused."""
    existing = find_by_idempotency_key(
        engine, debit_op.user_id, debit_op.realm_id, debit_op.idempotency_key
    )
    if existing is None:
        return None
    debit = _replay_matching(existing, debit_op)
    legs = find_by_correlation(engine, existing.correlation_ref)
    credit = next((t for t in legs if t.user_id == credit_op.user_id), None)
    if credit is None:
        raise IdempotencyConflict(
            f"Idempotency key {debit_op.idempotency_key!r} has no matching credit leg"
        )
    return TransferResult(debit=debit, credit=_replay(credit))

def transfer_or_gift(
    engine: Engine,
    settings: EconomySettings,
    *,
    sender_id: str,
    recipient_id: str,
    realm_id: str,
    amount: int,
    currency: Currency = Currency.PRIMARY,
    note: str = "",
    gift: bool = True,
    involves_restricted_content: bool = False,
    sender_verified: bool = False,
    recipient_verified: bool = False,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> TransferResult:
    """Move *amount* from sender to recipient as two linked records.

    Both legs share one ``correlation_ref`` and name each other as
    counterparty.  Restricted currency or content requires both parties to
    be verified.  Either both legs commit or neither does.
    """
    validate_transfer(
        sender_id,
        recipient_id,
        amount,
        currency,
        involves_restricted_content=involves_restricted_content,
        sender_verified=sender_verified,
        recipient_verified=recipient_verified,
    )
    currency = Currency(currency)

    out_kind, in_kind = (
        (OperationKind.GIFT_OUT, OperationKind.GIFT_IN)
        if gift
        else (OperationKind.TRANSFER_OUT, OperationKind.TRANSFER_IN)
    )
    verb = "Gift" if gift else "Transfer"
    debit_op = LedgerOperation(
        user_id=sender_id,
        realm_id=realm_id,
        kind=out_kind,
        amount=amount,
        description=note or f"{verb} to {recipient_id}",
        currency=currency,
        counterparty_user_id=recipient_id,
        involves_restricted_content=involves_restricted_content,
        compliance_verified=sender_verified,
        idempotency_key=idempotency_key,
    )
    credit_op = LedgerOperation(
        user_id=recipient_id,
        realm_id=realm_id,
        kind=in_kind,
        amount=amount,
        description=note or f"{verb} from {sender_id}",
        currency=currency,
        counterparty_user_id=sender_id,
        involves_restricted_content=involves_restricted_content,
        compliance_verified=recipient_verified,
        idempotency_key=idempotency_key,
    )
    validate_operation(debit_op)

    if idempotency_key:
        replayed = _replay_transfer(engine, debit_op, credit_op)
        if replayed is not None:
            return replayed

    correlation_ref = generate_reference_code("XFR")
    try:
        with Session(engine, expire_on_commit=False) as session:
            # Fixed lock order so opposing transfers can't deadlock.
            for user_id in sorted((sender_id, recipient_id)):
                get_or_create_account(session, user_id, realm_id, settings, lock=True, now=now)
            debit = apply_in_session(session, debit_op, now=now, correlation_ref=correlation_ref)
            credit = apply_in_session(session, credit_op, now=now, correlation_ref=correlation_ref)
            session.commit()
    except IntegrityError as exc:
        if not idempotency_key:
            raise
        replayed = _replay_transfer(engine, debit_op, credit_op)
        if replayed is not None:
            return replayed
        # The key is already taken on the recipient's account.
        raise IdempotencyConflict(
            f"Idempotency key {idempotency_key!r} is already used by {recipient_id}"
        ) from exc

    logger.info(
        "%s %d %s %s → %s (%s)", verb, amount, currency, sender_id, recipient_id, correlation_ref,
    )
    return TransferResult(debit=debit, credit=credit)


def purchase(
    engine: Engine,
    settings: EconomySettings,
    *,
    user_id: str,
    realm_id: str,
    item_reference: str,
    price: int,
    currency: Currency = Currency.PRIMARY,
    quantity: int = 1,
    restricted_item: bool = False,
    compliance_verified: bool = False,
    description: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> LedgerResult:
    """Debit ``price × quantity`` for an item identified by *item_reference*."""
    op = build_purchase(
        user_id=user_id,
        realm_id=realm_id,
        item_reference=item_reference,
        price=price,
        currency=currency,
        quantity=quantity,
        restricted_item=restricted_item,
        compliance_verified=compliance_verified,
        description=description,
        idempotency_key=idempotency_key,
    )
    return apply(engine, op, settings=settings, now=now)


def build_purchase(
    *,
    user_id: str,
    realm_id: str,
    item_reference: str,
    price: int,
    currency: Currency = Currency.PRIMARY,
    quantity: int = 1,
    restricted_item: bool = False,
    compliance_verified: bool = False,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> LedgerOperation:
    """The validated :class:`LedgerOperation` for a purchase."""
    for label, value in (("Price", price), ("Quantity", quantity)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidAmount(f"{label} must be a positive integer, got {value!r}")
    op = LedgerOperation(
        user_id=user_id,
        realm_id=realm_id,
        kind=OperationKind.PURCHASE,
        amount=price * quantity,
        description=description or f"Purchased {quantity}× {item_reference}",
        currency=Currency(currency),
        item_reference=item_reference,
        requires_restricted_access=restricted_item,
        involves_restricted_content=restricted_item,
        compliance_verified=compliance_verified,
        idempotency_key=idempotency_key,
        metadata={"quantity": quantity, "unit_price": price},
    )
    validate_operation(op)
    return op


def build_adjustment(
    *,
    actor_id: str,
    user_id: str,
    realm_id: str,
    amount: int,
    currency: Currency = Currency.PRIMARY,
    reason: str = "",
    compliance_verified: bool = False,
) -> LedgerOperation:
    """The validated operation for a signed administrative adjustment."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmount(f"Adjustment must be a non-zero integer, got {amount!r}")
    op = LedgerOperation(
        user_id=user_id,
        realm_id=realm_id,
        kind=OperationKind.ADMIN_ADJUSTMENT if amount > 0 else OperationKind.PENALTY,
        amount=abs(amount),
        description=reason or "Administrative adjustment",
        currency=Currency(currency),
        compliance_verified=compliance_verified,
        processed_by=actor_id,
        metadata={"signed_amount": amount, "reason": reason},
    )
    validate_operation(op)
    return op


def admin_adjust(
    engine: Engine,
    settings: EconomySettings,
    *,
    actor_id: str,
    user_id: str,
    realm_id: str,
    amount: int,
    currency: Currency = Currency.PRIMARY,
    reason: str = "",
    compliance_verified: bool = False,
    now: datetime | None = None,
) -> LedgerResult:
    """Signed administrative correction: positive credits, negative debits.

    Recorded as ``admin_adjustment`` or ``penalty`` and audit-logged.
    """
    op = build_adjustment(
        actor_id=actor_id,
        user_id=user_id,
        realm_id=realm_id,
        amount=amount,
        currency=currency,
        reason=reason,
        compliance_verified=compliance_verified,
    )
    currency = op.currency
    with Session(engine, expire_on_commit=False) as session:
        get_or_create_account(session, user_id, realm_id, settings, now=now)
        result = apply_in_session(session, op, now=now)
        record_audit(
            session,
            realm_id=realm_id,
            action=AuditAction.ADMIN_ADJUSTMENT,
            target_user_id=user_id,
            actor_id=actor_id,
            details={
                "reference_code": result.transaction.reference_code,
                "amount": amount,
                "currency": currency.value,
                "reason": reason,
                "balance_after": result.new_balance,
            },
            compliance_flag=currency == Currency.RESTRICTED,
            now=now,
        )
        session.commit()

    logger.info(
        "Admin %s adjusted %s by %+d %s (%s)", actor_id, user_id, amount, currency, reason,
    )
    return result


def reverse_transaction(
    engine: Engine,
    *,
    reference_code: str,
    actor_id: str,
    reason: str = "",
    now: datetime | None = None,
) -> list[LedgerResult]:
    """Undo a completed transaction by writing correcting records.

    Debit legs are reversed with a ``refund``, credit legs with a
    ``penalty``; each correcting record points at its original through
    ``reverses_transaction_id``.  Both legs of a transfer or gift are
    reversed together.  The originals are left untouched.
    """
    with Session(engine, expire_on_commit=False) as session:
        original = session.scalar(
            select(LedgerTransaction).where(LedgerTransaction.reference_code == reference_code)
        )
        if original is None:
            raise TransactionNotFound(f"No transaction with reference {reference_code}")

        legs = [original]
        if original.correlation_ref:
            legs = list(session.scalars(
                select(LedgerTransaction).where(
                    LedgerTransaction.correlation_ref == original.correlation_ref
                )
            ).all())

        for leg in legs:
            already = session.scalar(
                select(LedgerTransaction.id).where(
                    LedgerTransaction.reverses_transaction_id == leg.id
                )
            )
            if already is not None:
                raise AlreadyReversed(f"Transaction {leg.reference_code} was already reversed")

        # Take money back before giving it back, so a short recipient fails first.
        legs.sort(key=lambda t: DIRECTION[OperationKind(t.kind)] is Direction.DEBIT)
        correlation_ref = generate_reference_code("XFR") if len(legs) > 1 else None

        results = []
        for leg in legs:
            direction = DIRECTION[OperationKind(leg.kind)]
            op = LedgerOperation(
                user_id=leg.user_id,
                realm_id=leg.realm_id,
                kind=REVERSAL_KIND[direction],
                amount=leg.amount,
                description=f"Reversal of {leg.reference_code}" + (f": {reason}" if reason else ""),
                currency=Currency(leg.currency),
                counterparty_user_id=leg.counterparty_user_id,
                requires_restricted_access=leg.requires_restricted_access,
                involves_restricted_content=leg.involves_restricted_content,
                compliance_verified=leg.compliance_verified,
                processed_by=actor_id,
                metadata={"reversal_of": leg.reference_code, "reason": reason},
            )
            result = apply_in_session(
                session,
                op,
                now=now,
                correlation_ref=correlation_ref,
                reverses_transaction_id=leg.id,
            )
            record_audit(
                session,
                realm_id=leg.realm_id,
                action=AuditAction.REVERSAL,
                target_user_id=leg.user_id,
                actor_id=actor_id,
                details={
                    "original": leg.reference_code,
                    "reversal": result.transaction.reference_code,
                    "amount": leg.amount,
                    "currency": leg.currency,
                    "reason": reason,
                },
                compliance_flag=op.needs_compliance,
                now=now,
            )
            results.append(result)
        session.commit()

    logger.info("Reversed %s (%d leg(s)) by %s", reference_code, len(results), actor_id)
    return results


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def find_by_reference(engine: Engine, reference_code: str) -> LedgerTransaction | None:
    with Session(engine) as session:
        return session.scalar(
            select(LedgerTransaction).where(LedgerTransaction.reference_code == reference_code)
        )


def find_by_correlation(engine: Engine, correlation_ref: str) -> list[LedgerTransaction]:
    with Session(engine) as session:
        return list(session.scalars(
            select(LedgerTransaction).where(LedgerTransaction.correlation_ref == correlation_ref)
        ).all())


def find_by_idempotency_key(
    engine: Engine, user_id: str, realm_id: str, key: str
) -> LedgerTransaction | None:
    with Session(engine) as session:
        return session.scalar(
            select(LedgerTransaction).where(
                LedgerTransaction.user_id == user_id,
                LedgerTransaction.realm_id == realm_id,
                LedgerTransaction.idempotency_key == key,
            )
        )


def get_history(
    engine: Engine,
    user_id: str,
    realm_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    kind: OperationKind | None = None,
    currency: Currency | None = None,
) -> list[LedgerTransaction]:
    """Newest-first transactions for one account."""
    stmt = select(LedgerTransaction).where(
        LedgerTransaction.user_id == user_id,
        LedgerTransaction.realm_id == realm_id,
    )
    if kind is not None:
        stmt = stmt.where(LedgerTransaction.kind == OperationKind(kind).value)
    if currency is not None:
        stmt = stmt.where(LedgerTransaction.currency == Currency(currency).value)
    stmt = stmt.order_by(
        LedgerTransaction.created_at.desc(), LedgerTransaction.reference_code.desc()
    ).limit(limit).offset(offset)

    with Session(engine) as session:
        return list(session.scalars(stmt).all())


def get_transaction_stats(
    engine: Engine,
    user_id: str,
    realm_id: str,
    *,
    days: int = 30,
    now: datetime | None = None,
) -> dict:
    """Per-kind counts and totals over the last *days* days."""
    since = (now or datetime.now(UTC)) - timedelta(days=days)
    with Session(engine) as session:
        rows = session.execute(
            select(
                LedgerTransaction.kind,
                LedgerTransaction.currency,
                func.count().label("cnt"),
                func.coalesce(func.sum(LedgerTransaction.amount), 0).label("total"),
            )
            .where(
                LedgerTransaction.user_id == user_id,
                LedgerTransaction.realm_id == realm_id,
                LedgerTransaction.status == TransactionStatus.COMPLETED.value,
                LedgerTransaction.created_at >= since,
            )
            .group_by(LedgerTransaction.kind, LedgerTransaction.currency)
        ).all()

    by_kind: dict[str, dict[str, dict[str, int]]] = {}
    totals_in = {c.value: 0 for c in Currency}
    totals_out = {c.value: 0 for c in Currency}
    count = 0
    for row in rows:
        by_kind.setdefault(row.kind, {})[row.currency] = {
            "count": int(row.cnt), "amount": int(row.total),
        }
        count += int(row.cnt)
        bucket = totals_out if DIRECTION[OperationKind(row.kind)] is Direction.DEBIT else totals_in
        bucket[row.currency] += int(row.total)

    return {
        "period_days": days,
        "total_transactions": count,
        "by_kind": by_kind,
        "total_in": totals_in,
        "total_out": totals_out,
    }
