from __future__ import annotations

import os
from dataclasses import asdict
from typing import Dict

import pandas as pd

from ..ledger.store import LedgerStore

FILL_COLUMNS = [
    "id", "leader_trade_id", "leader_wallet", "condition_id", "outcome", "side", "price", "size",
    "notional", "realized_pnl", "timestamp", "rule_label", "title",
]
SNAPSHOT_COLUMNS = ["timestamp", "equity", "cash", "unrealized", "realized"]
POSITION_COLUMNS = ["condition_id", "outcome", "leader_wallet", "size", "avg_price", "updated_at"]


def export_parquet(store: LedgerStore, base_dir: str = "data", limit: int = 100_000) -> Dict[str, str]:
    """Write fills, portfolio snapshots and open positions to parquet; returns the written paths."""
    os.makedirs(base_dir, exist_ok=True)
    fills_df = pd.DataFrame(store.fills(limit), columns=FILL_COLUMNS)
    snaps_df = pd.DataFrame([asdict(s) for s in store.snapshots()], columns=SNAPSHOT_COLUMNS)
    positions_df = pd.DataFrame(
        [
            {
                "condition_id": p.key.market,
                "outcome": p.key.outcome,
                "leader_wallet": p.key.leader_wallet,
                "size": p.size,
                "avg_price": p.avg_price,
                "updated_at": p.updated_at,
            }
            for p in store.positions()
        ],
        columns=POSITION_COLUMNS,
    )
    paths = {
        "fills": os.path.join(base_dir, "fills.parquet"),
        "snapshots": os.path.join(base_dir, "snapshots.parquet"),
        "positions": os.path.join(base_dir, "positions.parquet"),
    }
    fills_df.to_parquet(paths["fills"])
    snaps_df.to_parquet(paths["snapshots"])
    positions_df.to_parquet(paths["positions"])
    return paths
