"""
canopy.errors — Exception Taxonomy
===================================

Two families:

* :class:`LedgerError` — expected, caller-facing outcomes of a ledger
  request (bad amount, not enough funds, compliance gate, cooldown …).
  Raising one of these never leaves a partial write behind.
* :class:`PersistenceError` — infrastructure problems.  Most of them are
  absorbed by :class:`~canopy.database.manager.PersistenceManager`, which
  switches to degraded mode instead of surfacing them.
"""

from __future__ import annotations

from datetime import timedelta


class CanopyError(Exception):
    """Base class for every error raised by canopy."""


# ---------------------------------------------------------------------------
# Ledger (caller-facing)
# ---------------------------------------------------------------------------
class LedgerError(CanopyError):
    """A ledger request was rejected before anything was written."""


class InvalidAmount(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    def __init__(self, currency: str, balance: int, requested: int) -> None:
        super().__init__(
            f"Insufficient {currency} balance: have {balance}, need {requested}"
        )
        self.currency = currency
        self.balance = balance
        self.requested = requested


class ComplianceRequired(LedgerError):
    """The operation touches restricted content/currency and access is not verified."""


class InvalidCounterparty(LedgerError):
    pass


class CooldownActive(LedgerError):
    def __init__(self, action: str, retry_after: timedelta) -> None:
        super().__init__(f"{action} is on cooldown for another {retry_after}")
        self.action = action
        self.retry_after = retry_after


class AccountNotFound(LedgerError):
    pass


class AccountInactive(AccountNotFound):
    """The account exists but has been deactivated."""


class TransactionNotFound(LedgerError):
    pass


class AlreadyReversed(LedgerError):
    pass


class IdempotencyConflict(LedgerError):
    """An idempotency key was reused for a request that differs from the stored one."""


class ImmutableRecordError(CanopyError):
    """Attempted to modify or delete a completed ledger transaction."""


# ---------------------------------------------------------------------------
# Persistence (mostly internal)
# ---------------------------------------------------------------------------
class PersistenceError(CanopyError):
    pass


class PersistenceUnavailable(PersistenceError):
    """No data accessor (live or degraded) is available."""


class MigrationFailed(PersistenceError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Migration {name!r} failed: {reason}")
        self.name = name


class ConnectionExhausted(PersistenceError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"Could not connect to the database after {attempts} attempts")
        self.attempts = attempts
