"""
canopy.engine.ledger — Ledger Operation Rules
==============================================

Pure rules for ledger operations.  No DB I/O inside this module.

* :data:`DIRECTION` maps every :class:`OperationKind` to debit or credit.
  The table is checked for completeness at import time, so adding a kind
  without deciding its direction fails loudly instead of silently crediting.
* :func:`validate_operation` performs every check that doesn't need the
  current balance; :func:`resulting_balance` does the one that does.
* :func:`generate_reference_code` produces the human-readable ``TXN-…``
  codes stored on each record.
"""

from __future__ import annotations

import enum
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from typing import Any

from canopy.constants import Currency
from canopy.database.models import OperationKind
from canopy.errors import (
    ComplianceRequired,
    InsufficientFunds,
    InvalidAmount,
    InvalidCounterparty,
)


class Direction(enum.StrEnum):
    DEBIT = "debit"
    CREDIT = "credit"


DIRECTION: dict[OperationKind, Direction] = {
    OperationKind.PURCHASE: Direction.DEBIT,
    OperationKind.TRANSFER_OUT: Direction.DEBIT,
    OperationKind.GIFT_OUT: Direction.DEBIT,
    OperationKind.PENALTY: Direction.DEBIT,
    OperationKind.TAX: Direction.DEBIT,
    OperationKind.SALE: Direction.CREDIT,
    OperationKind.TRANSFER_IN: Direction.CREDIT,
    OperationKind.GIFT_IN: Direction.CREDIT,
    OperationKind.DAILY_REWARD: Direction.CREDIT,
    OperationKind.WORK_REWARD: Direction.CREDIT,
    OperationKind.ADMIN_ADJUSTMENT: Direction.CREDIT,
    OperationKind.REFUND: Direction.CREDIT,
    OperationKind.INITIAL_GRANT: Direction.CREDIT,
}

_undecided = set(OperationKind) - DIRECTION.keys()
if _undecided:
    raise RuntimeError(
        f"OperationKind(s) without a debit/credit direction: {sorted(_undecided)}"
    )

# Kinds that move value between two accounts and must name the other side
COUNTERPARTY_KINDS: frozenset[OperationKind] = frozenset({
    OperationKind.TRANSFER_OUT,
    OperationKind.TRANSFER_IN,
    OperationKind.GIFT_OUT,
    OperationKind.GIFT_IN,
})

# The kind used to undo a record of the given direction
REVERSAL_KIND: dict[Direction, OperationKind] = {
    Direction.DEBIT: OperationKind.REFUND,
    Direction.CREDIT: OperationKind.PENALTY,
}


# ---------------------------------------------------------------------------
# LedgerOperation: one requested balance change
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LedgerOperation:
    """A requested balance change against one account."""

    user_id: str
    realm_id: str
    kind: OperationKind
    amount: int
    description: str
    currency: Currency = Currency.PRIMARY
    counterparty_user_id: str | None = None
    item_reference: str | None = None
    requires_restricted_access: bool = False
    involves_restricted_content: bool = False
    compliance_verified: bool = False
    idempotency_key: str | None = None
    processed_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> Direction:
        return DIRECTION[self.kind]

    @property
    def is_debit(self) -> bool:
        return self.direction is Direction.DEBIT

    @property
    def needs_compliance(self) -> bool:
        return (
            self.requires_restricted_access
            or self.involves_restricted_content
            or self.currency == Currency.RESTRICTED
        )

    def with_compliance(self, granted: bool) -> LedgerOperation:
        return replace(self, compliance_verified=granted)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_operation(op: LedgerOperation) -> None:
    """Reject *op* if it can never succeed, regardless of balances.

    Order: amount → counterparty → compliance.
    """
    if isinstance(op.amount, bool) or not isinstance(op.amount, int) or op.amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {op.amount!r}")

    if op.kind in COUNTERPARTY_KINDS:
        if not op.counterparty_user_id:
            raise InvalidCounterparty(f"{op.kind} requires a counterparty")
        if op.counterparty_user_id == op.user_id:
            raise InvalidCounterparty("Cannot transfer to yourself")

    if op.needs_compliance and not op.compliance_verified:
        raise ComplianceRequired(
            f"{op.kind} on {op.currency} requires verified restricted access"
        )


def validate_transfer(
    sender_id: str,
    recipient_id: str,
    amount: int,
    currency: Currency | str = Currency.PRIMARY,
    *,
    involves_restricted_content: bool = False,
    sender_verified: bool = False,
    recipient_verified: bool = False,
) -> None:
    """Reject a transfer or gift that can never succeed.

    Order: counterparty → compliance (both parties) → amount.
    """
    if not sender_id or not recipient_id:
        raise InvalidCounterparty("Both sender and recipient are required")
    if sender_id == recipient_id:
        raise InvalidCounterparty("Cannot transfer to yourself")
    if Currency(currency) == Currency.RESTRICTED or involves_restricted_content:
        if not (sender_verified and recipient_verified):
            raise ComplianceRequired(
                "Restricted transfers require verified access for both parties"
            )
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")


def check_funds(op: LedgerOperation, balance: int) -> None:
    if op.is_debit and balance < op.amount:
        raise InsufficientFunds(str(op.currency), balance, op.amount)


def resulting_balance(op: LedgerOperation, balance: int) -> int:
    """Balance after applying *op*; never negative."""
    check_funds(op, balance)
    return balance - op.amount if op.is_debit else balance + op.amount


# ---------------------------------------------------------------------------
# Reference codes
# ---------------------------------------------------------------------------
_ALPHABET = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_reference_code(prefix: str = "TXN") -> str:
    """``TXN-<base36 epoch millis>-<5 random base36>``, e.g. ``TXN-MG3K2Q1A-7Q2ZD``."""
    stamp = _base36(time.time_ns() // 1_000_000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(5))
    return f"{prefix}-{stamp}-{suffix}"
