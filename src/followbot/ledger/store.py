from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .model import (
    ExecutionResult,
    Fill,
    FollowerPosition,
    LeaderTrade,
    LedgerState,
    PortfolioSnapshot,
    PositionKey,
)

log = logging.getLogger(__name__)


DDL = """
CREATE TABLE IF NOT EXISTS leader_trades (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  proxy_wallet TEXT NOT NULL,
  transaction_hash TEXT NOT NULL,
  condition_id TEXT NOT NULL,
  asset_id TEXT NOT NULL DEFAULT '',
  outcome TEXT NOT NULL DEFAULT '',
  side TEXT NOT NULL,
  size REAL NOT NULL,
  price REAL NOT NULL,
  timestamp INTEGER NOT NULL,
  market_slug TEXT,
  market_title TEXT,
  UNIQUE(proxy_wallet, transaction_hash, asset_id, side, size, price, timestamp)
);
CREATE INDEX IF NOT EXISTS idx_leader_trades_condition_ts ON leader_trades(condition_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_leader_trades_wallet_ts ON leader_trades(proxy_wallet, timestamp);

CREATE TABLE IF NOT EXISTS markets (
  condition_id TEXT PRIMARY KEY,
  slug TEXT,
  title TEXT,
  category TEXT,
  end_date TEXT,
  updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS paper_positions (
  condition_id TEXT NOT NULL,
  outcome TEXT NOT NULL DEFAULT '',
  leader_wallet TEXT NOT NULL,
  size REAL NOT NULL,
  avg_price REAL NOT NULL,
  updated_at INTEGER NOT NULL,
  PRIMARY KEY(condition_id, outcome, leader_wallet)
);

CREATE TABLE IF NOT EXISTS paper_fills (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  leader_trade_id INTEGER NOT NULL UNIQUE,
  leader_wallet TEXT NOT NULL,
  condition_id TEXT NOT NULL,
  outcome TEXT NOT NULL DEFAULT '',
  side TEXT NOT NULL,
  price REAL NOT NULL,
  size REAL NOT NULL,
  notional REAL NOT NULL,
  realized_pnl REAL NOT NULL DEFAULT 0,
  timestamp INTEGER NOT NULL,
  rule_label TEXT,
  created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS paper_portfolio (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  timestamp INTEGER NOT NULL,
  equity REAL NOT NULL,
  cash REAL NOT NULL,
  unrealized REAL NOT NULL,
  realized REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_state (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  cash REAL NOT NULL,
  realized REAL NOT NULL,
  last_trade_id INTEGER NOT NULL,
  epoch_start_ts INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS live_fills (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  leader_trade_id INTEGER NOT NULL,
  leader_wallet TEXT NOT NULL,
  condition_id TEXT NOT NULL,
  side TEXT NOT NULL,
  price REAL NOT NULL,
  size REAL NOT NULL,
  notional REAL NOT NULL,
  status TEXT NOT NULL,
  reference TEXT,
  error TEXT,
  submitted_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS poll_watermarks (
  wallet TEXT PRIMARY KEY,
  last_ts INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
"""


# Columns introduced after the first schema version
ADDED_COLUMNS = {
    "leader_trades": [("outcome", "TEXT NOT NULL DEFAULT ''")],
    "paper_fills": [("outcome", "TEXT NOT NULL DEFAULT ''"), ("realized_pnl", "REAL NOT NULL DEFAULT 0")],
    "live_fills": [("reference", "TEXT")],
}


def _row_to_trade(r: sqlite3.Row) -> LeaderTrade:
    return LeaderTrade(
        id=int(r["id"]),
        leader_wallet=str(r["proxy_wallet"]).lower(),
        tx_hash=r["transaction_hash"],
        market=r["condition_id"],
        asset_id=r["asset_id"] or "",
        outcome=r["outcome"] or "",
        side=r["side"],
        size=float(r["size"]),
        price=float(r["price"]),
        timestamp=int(r["timestamp"]),
        market_slug=r["market_slug"],
        market_title=r["market_title"],
    )


def _row_to_position(r: sqlite3.Row) -> FollowerPosition:
    return FollowerPosition(
        key=PositionKey(market=r["condition_id"], outcome=r["outcome"], leader_wallet=r["leader_wallet"]),
        size=float(r["size"]),
        avg_price=float(r["avg_price"]),
        updated_at=int(r["updated_at"]),
    )


def _row_to_snapshot(r: sqlite3.Row) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        timestamp=int(r["timestamp"]),
        equity=float(r["equity"]),
        cash=float(r["cash"]),
        unrealized=float(r["unrealized"]),
        realized=float(r["realized"]),
    )


class LedgerStore:
    """SQLite persistence for the trade log, ledger state and read projections.

    Writers mutate through `atomic()`, one transaction per leader trade. Readers open
    their own short-lived connections; WAL mode keeps them from blocking the writer.
    """

    def __init__(self, path: str = "data/trades.db", busy_timeout_ms: int = 10_000):
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self.path = path
        self.busy_timeout_ms = int(busy_timeout_ms)

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=self.busy_timeout_ms / 1000.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """One write transaction; rolled back entirely if the body raises."""
        con = self._connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    def init(self, migrate: bool = True) -> Dict[str, int]:
        """Create missing tables; readers pass `migrate=False` to stay off the write lock."""
        with self.connection() as con:
            try:
                con.execute("PRAGMA journal_mode = WAL")
                con.execute("PRAGMA wal_autocheckpoint = 1000")
            except sqlite3.DatabaseError as e:
                log.warning("SQLite WAL setup skipped: %s", e)
            con.executescript(DDL)
        return self.migrate() if migrate else {}

    # ---- migrations ----

    def migrate(self) -> Dict[str, int]:
        """Normalize legacy databases in place.

        - NULL outcomes become '' and rows that collide on the new key are merged
          (size summed, avg price size-weighted).
        - Key/value `paper_state` rows are folded into the single `ledger_state` row.
        - Columns missing from older schemas are added with their defaults.
        """
        stats = {"columns_added": 0, "positions_merged": 0, "state_migrated": 0}
        with self.atomic() as con:
            for table, columns in ADDED_COLUMNS.items():
                have = {r["name"] for r in con.execute(f"PRAGMA table_info({table})")}
                for name, decl in columns:
                    if name not in have:
                        con.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                        stats["columns_added"] += 1
            nulls = con.execute("SELECT COUNT(*) FROM paper_positions WHERE outcome IS NULL").fetchone()[0]
            if nulls:
                rows = con.execute(
                    """
                    SELECT condition_id, COALESCE(outcome, '') AS outcome, leader_wallet,
                           SUM(size) AS size,
                           CASE WHEN SUM(size) != 0 THEN SUM(size * avg_price) / SUM(size) ELSE AVG(avg_price) END AS avg_price,
                           MAX(updated_at) AS updated_at
                    FROM paper_positions
                    GROUP BY condition_id, COALESCE(outcome, ''), leader_wallet
                    """
                ).fetchall()
                con.execute("DELETE FROM paper_positions")
                for r in rows:
                    if float(r["size"]) == 0.0:
                        continue
                    con.execute(
                        "INSERT INTO paper_positions(condition_id, outcome, leader_wallet, size, avg_price, updated_at) VALUES (?,?,?,?,?,?)",
                        (r["condition_id"], r["outcome"], r["leader_wallet"], r["size"], r["avg_price"], r["updated_at"]),
                    )
                stats["positions_merged"] = int(nulls)
            legacy = con.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='paper_state'"
            ).fetchone()
            has_state = con.execute("SELECT 1 FROM ledger_state WHERE id = 1").fetchone()
            if legacy and not has_state:
                kv = {r["key"]: r["value"] for r in con.execute("SELECT key, value FROM paper_state")}
                if "paper_cash" in kv:
                    con.execute(
                        "INSERT INTO ledger_state(id, cash, realized, last_trade_id, epoch_start_ts) VALUES (1,?,?,?,?)",
                        (
                            float(kv["paper_cash"]),
                            float(kv.get("paper_realized") or 0.0),
                            int(float(kv.get("last_trade_id") or 0)),
                            int(float(kv.get("paper_start_ts") or 0)),
                        ),
                    )
                    stats["state_migrated"] = 1
        if any(stats.values()):
            log.info("ledger store migrated: %s", stats)
        return stats

    # ---- trade log ----

    def insert_trades(self, trades: Iterable[LeaderTrade]) -> int:
        """INSERT OR IGNORE on the unique trade key; returns the number of new rows."""
        inserted = 0
        with self.atomic() as con:
            for t in trades:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO leader_trades
                      (proxy_wallet, transaction_hash, condition_id, asset_id, outcome, side, size, price, timestamp, market_slug, market_title)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        t.leader_wallet.lower(),
                        t.tx_hash,
                        t.market,
                        t.asset_id or "",
                        t.outcome or "",
                        t.side,
                        float(t.size),
                        float(t.price),
                        int(t.timestamp),
                        t.market_slug,
                        t.market_title,
                    ),
                )
                inserted += cur.rowcount if cur.rowcount > 0 else 0
        return inserted

    def pending_trades(self, state: LedgerState, limit: Optional[int] = None) -> List[LeaderTrade]:
        sql = "SELECT * FROM leader_trades WHERE id > ? AND timestamp >= ? ORDER BY id ASC"
        params: Tuple[Any, ...] = (int(state.last_trade_id), int(state.epoch_start_ts))
        if limit:
            sql += " LIMIT ?"
            params += (int(limit),)
        with self.connection() as con:
            return [_row_to_trade(r) for r in con.execute(sql, params)]

    def max_trade_id(self, con: Optional[sqlite3.Connection] = None) -> int:
        if con is not None:
            return int(con.execute("SELECT COALESCE(MAX(id), 0) FROM leader_trades").fetchone()[0])
        with self.connection() as c:
            return self.max_trade_id(c)

    def poll_watermark(self, wallet: str) -> int:
        """Newest trade timestamp the poller has seen for `wallet`; pushed trades never move it."""
        with self.connection() as con:
            row = con.execute("SELECT last_ts FROM poll_watermarks WHERE wallet = ?", (wallet.lower(),)).fetchone()
            return int(row[0]) if row is not None else 0

    def set_poll_watermark(self, wallet: str, ts: int, updated_at: int) -> None:
        with self.connection() as con:
            con.execute(
                """
                INSERT INTO poll_watermarks(wallet, last_ts, updated_at) VALUES (?,?,?)
                ON CONFLICT(wallet) DO UPDATE SET last_ts=MAX(last_ts, excluded.last_ts), updated_at=excluded.updated_at
                """,
                (wallet.lower(), int(ts), int(updated_at)),
            )

    def latest_mark_prices(self, con: Optional[sqlite3.Connection] = None) -> Dict[Tuple[str, str], float]:
        """Latest observed trade price per (market, outcome); newest id wins timestamp ties."""
        sql = """
            SELECT lt.condition_id, lt.outcome, lt.price FROM leader_trades lt
            WHERE lt.id = (
              SELECT lt2.id FROM leader_trades lt2
              WHERE lt2.condition_id = lt.condition_id AND lt2.outcome = lt.outcome
              ORDER BY lt2.timestamp DESC, lt2.id DESC LIMIT 1
            )
        """
        if con is None:
            with self.connection() as c:
                return self.latest_mark_prices(c)
        return {(r["condition_id"], r["outcome"]): float(r["price"]) for r in con.execute(sql)}

    # ---- ledger state ----

    def load_state(self, con: Optional[sqlite3.Connection] = None) -> Optional[LedgerState]:
        if con is None:
            with self.connection() as c:
                return self.load_state(c)
        r = con.execute("SELECT cash, realized, last_trade_id, epoch_start_ts FROM ledger_state WHERE id = 1").fetchone()
        if r is None:
            return None
        return LedgerState(
            cash=float(r["cash"]),
            realized=float(r["realized"]),
            last_trade_id=int(r["last_trade_id"]),
            epoch_start_ts=int(r["epoch_start_ts"]),
        )

    def save_state(self, con: sqlite3.Connection, state: LedgerState) -> None:
        con.execute(
            """
            INSERT INTO ledger_state(id, cash, realized, last_trade_id, epoch_start_ts) VALUES (1,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET cash=excluded.cash, realized=excluded.realized,
              last_trade_id=excluded.last_trade_id, epoch_start_ts=excluded.epoch_start_ts
            """,
            (float(state.cash), float(state.realized), int(state.last_trade_id), int(state.epoch_start_ts)),
        )

    # ---- positions ----

    def get_position(self, con: sqlite3.Connection, key: PositionKey) -> Optional[FollowerPosition]:
        r = con.execute(
            "SELECT * FROM paper_positions WHERE condition_id=? AND outcome=? AND leader_wallet=?",
            (key.market, key.outcome, key.leader_wallet),
        ).fetchone()
        return _row_to_position(r) if r is not None else None

    def market_exposure(self, con: sqlite3.Connection, market: str, wallet: str) -> float:
        """Cost-basis notional held for `wallet` across every outcome of `market`."""
        r = con.execute(
            "SELECT COALESCE(SUM(size * avg_price), 0) FROM paper_positions WHERE condition_id=? AND leader_wallet=?",
            (market, wallet.lower()),
        ).fetchone()
        return float(r[0])

    def upsert_position(self, con: sqlite3.Connection, pos: FollowerPosition) -> None:
        con.execute(
            """
            INSERT INTO paper_positions(condition_id, outcome, leader_wallet, size, avg_price, updated_at) VALUES (?,?,?,?,?,?)
            ON CONFLICT(condition_id, outcome, leader_wallet) DO UPDATE SET
              size=excluded.size, avg_price=excluded.avg_price, updated_at=excluded.updated_at
            """,
            (pos.key.market, pos.key.outcome, pos.key.leader_wallet, float(pos.size), float(pos.avg_price), int(pos.updated_at)),
        )

    def delete_position(self, con: sqlite3.Connection, key: PositionKey) -> None:
        con.execute(
            "DELETE FROM paper_positions WHERE condition_id=? AND outcome=? AND leader_wallet=?",
            (key.market, key.outcome, key.leader_wallet),
        )

    def positions(self, con: Optional[sqlite3.Connection] = None) -> List[FollowerPosition]:
        if con is None:
            with self.connection() as c:
                return self.positions(c)
        rows = con.execute("SELECT * FROM paper_positions ORDER BY leader_wallet, condition_id, outcome")
        return [_row_to_position(r) for r in rows]

    # ---- fills ----

    def insert_fill(self, con: sqlite3.Connection, fill: Fill, created_at: int) -> None:
        con.execute(
            """
            INSERT INTO paper_fills(leader_trade_id, leader_wallet, condition_id, outcome, side, price, size, notional,
                                    realized_pnl, timestamp, rule_label, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                fill.source_trade_id,
                fill.leader_wallet,
                fill.market,
                fill.outcome,
                fill.side,
                fill.price,
                fill.size,
                fill.signed_notional,
                fill.realized_pnl,
                fill.timestamp,
                fill.rule_label,
                int(created_at),
            ),
        )

    def fills(self, limit: int = 50, side: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first fills with the best available market title."""
        where = "WHERE f.side = ?" if side else ""
        params: Tuple[Any, ...] = ((side,) if side else ()) + (int(limit),)
        sql = f"""
            SELECT f.id, f.leader_trade_id, f.leader_wallet, f.condition_id, f.outcome, f.side, f.price, f.size,
                   f.notional, f.realized_pnl, f.timestamp, f.rule_label,
                   COALESCE(m.title, lt.market_title) AS title
            FROM paper_fills f
            LEFT JOIN leader_trades lt ON lt.id = f.leader_trade_id
            LEFT JOIN markets m ON m.condition_id = f.condition_id
            {where}
            ORDER BY f.id DESC
            LIMIT ?
        """
        with self.connection() as con:
            return [dict(r) for r in con.execute(sql, params)]

    def insert_live_fill(self, fill: Fill, result: ExecutionResult, submitted_at: int) -> None:
        with self.connection() as con:
            con.execute(
                """
                INSERT INTO live_fills(leader_trade_id, leader_wallet, condition_id, side, price, size, notional,
                                       status, reference, error, submitted_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    fill.source_trade_id,
                    fill.leader_wallet,
                    fill.market,
                    fill.side,
                    fill.price,
                    fill.size,
                    fill.signed_notional,
                    result.status,
                    result.reference,
                    result.error,
                    int(submitted_at),
                ),
            )

    def live_fills(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.connection() as con:
            return [dict(r) for r in con.execute("SELECT * FROM live_fills ORDER BY id DESC LIMIT ?", (int(limit),))]

    # ---- snapshots ----

    def insert_snapshot(self, con: sqlite3.Connection, snap: PortfolioSnapshot) -> None:
        con.execute(
            "INSERT INTO paper_portfolio(timestamp, equity, cash, unrealized, realized) VALUES (?,?,?,?,?)",
            (int(snap.timestamp), snap.equity, snap.cash, snap.unrealized, snap.realized),
        )

    def snapshots(self, limit: Optional[int] = None) -> List[PortfolioSnapshot]:
        sql = "SELECT * FROM paper_portfolio ORDER BY id ASC"
        params: Tuple[Any, ...] = ()
        if limit:
            sql = "SELECT * FROM (SELECT * FROM paper_portfolio ORDER BY id DESC LIMIT ?) ORDER BY id ASC"
            params = (int(limit),)
        with self.connection() as con:
            return [_row_to_snapshot(r) for r in con.execute(sql, params)]

    def snapshots_bucketed(self, interval_s: int = 300, limit: int = 288) -> List[PortfolioSnapshot]:
        """Latest snapshot per `interval_s` bucket, newest `limit` buckets, oldest first."""
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        sql = """
            WITH buckets AS (
              SELECT CAST(timestamp / 1000 / ? AS INTEGER) AS bucket, MAX(id) AS max_id, MAX(timestamp) AS max_ts
              FROM paper_portfolio
              GROUP BY bucket
              ORDER BY max_ts DESC
              LIMIT ?
            )
            SELECT p.* FROM paper_portfolio p
            JOIN buckets b ON p.id = b.max_id
            ORDER BY p.timestamp ASC, p.id ASC
        """
        with self.connection() as con:
            return [_row_to_snapshot(r) for r in con.execute(sql, (int(interval_s), int(limit)))]

    # ---- markets ----

    def has_market(self, condition_id: str) -> bool:
        with self.connection() as con:
            return con.execute("SELECT 1 FROM markets WHERE condition_id = ?", (condition_id,)).fetchone() is not None

    def upsert_market(self, meta: Dict[str, Any], updated_at: int) -> None:
        with self.connection() as con:
            con.execute(
                """
                INSERT INTO markets(condition_id, slug, title, category, end_date, updated_at) VALUES (?,?,?,?,?,?)
                ON CONFLICT(condition_id) DO UPDATE SET slug=excluded.slug, title=excluded.title,
                  category=excluded.category, end_date=excluded.end_date, updated_at=excluded.updated_at
                """,
                (
                    meta["condition_id"],
                    meta.get("slug"),
                    meta.get("title"),
                    meta.get("category"),
                    meta.get("end_date"),
                    int(updated_at),
                ),
            )

    def market_titles(self) -> Dict[str, str]:
        with self.connection() as con:
            return {r["condition_id"]: r["title"] for r in con.execute("SELECT condition_id, title FROM markets") if r["title"]}

    # ---- reset ----

    def reset_epoch(self, con: sqlite3.Connection, state: LedgerState) -> None:
        con.execute("DELETE FROM paper_positions")
        con.execute("DELETE FROM paper_fills")
        con.execute("DELETE FROM paper_portfolio")
        self.save_state(con, state)
