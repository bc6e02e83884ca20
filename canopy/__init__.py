"""
Canopy — A Multi-Currency Community Ledger with Resilient Persistence
======================================================================
Tracks per-member balances in a primary and an age-restricted currency,
records every balance change as an immutable ledger transaction, runs the
daily-claim and work reward cycles, and keeps serving (in a reduced,
degraded form) when the backing database goes away.

Package layout::

    canopy/
    ├── config.py          # YAML → typed Python config + logging setup
    ├── constants.py       # Currency names, work activity table
    ├── errors.py          # Exception taxonomy
    ├── economy.py         # Async public facade (the only surface callers use)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   ├── migrations.py  # Ordered, recorded schema migrations
    │   ├── access.py      # Live vs degraded data accessors
    │   └── manager.py     # Connect/backoff, health, recovery, maintenance
    ├── engine/
    │   ├── ledger.py      # Pure ledger rules (direction, validation, refs)
    │   └── rewards.py     # Pure daily/work reward quotes and cooldowns
    └── services/
        ├── account_service.py    # Lazy accounts, rank, leaderboard
        ├── ledger_service.py     # Atomic balance mutation + transaction record
        ├── reward_service.py     # Daily claim / work cycles
        └── retention_service.py  # Audit-log and heartbeat pruning
"""

__version__ = "0.1.0"
