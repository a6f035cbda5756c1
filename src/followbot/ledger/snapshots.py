from __future__ import annotations

import sqlite3

from ..metrics.ledger import set_valuation_gauges
from . import valuation
from .model import LedgerState, PortfolioSnapshot


class SnapshotRecorder:
    """Appends portfolio samples computed from one consistent positions/marks read."""

    def __init__(self, store):
        self.store = store

    def record(self, con: sqlite3.Connection, state: LedgerState, ts: int) -> PortfolioSnapshot:
        v = valuation.value(state, self.store.positions(con), self.store.latest_mark_prices(con))
        snap = PortfolioSnapshot(
            timestamp=int(ts),
            equity=v.equity,
            cash=v.cash,
            unrealized=v.unrealized,
            realized=v.realized,
        )
        self.store.insert_snapshot(con, snap)
        set_valuation_gauges(v.equity, v.cash, v.unrealized, v.realized)
        return snap
