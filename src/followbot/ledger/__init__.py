"""Ledger package.

Public API:
- CopyLedger: replay leader trades into follower positions, cash and P&L.
- LedgerStore: SQLite trade log, ledger state, fills and snapshots.
"""

from .ledger import CopyLedger, RunReport  # re-export
from .store import LedgerStore

__all__ = ["CopyLedger", "RunReport", "LedgerStore"]
