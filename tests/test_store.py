import sqlite3

import pytest

from followbot.errors import InvariantViolation
from followbot.ledger.ledger import advance_cursor
from followbot.ledger.model import FollowerPosition, LedgerState, PortfolioSnapshot, PositionKey
from followbot.ledger.store import LedgerStore

from conftest import LEADER, trade


def test_insert_trades_deduplicates_on_unique_key(store):
    t = trade("0xtx1")
    assert store.insert_trades([t, t]) == 1
    assert store.insert_trades([t]) == 0
    # same tx, different fill size is a different trade
    assert store.insert_trades([trade("0xtx1", size=5)]) == 1
    # ignored inserts can leave gaps in ids, so compare the rows themselves
    rows = store.pending_trades(LedgerState(cash=0.0, realized=0.0, last_trade_id=0, epoch_start_ts=0))
    assert sorted((t.tx_hash, t.size) for t in rows) == [("0xtx1", 5.0), ("0xtx1", 100.0)]


def test_missing_asset_id_still_deduplicates(store):
    t = trade("0xtx1", asset="")
    store.insert_trades([t])
    store.insert_trades([t])
    assert len(store.pending_trades(LedgerState(cash=0.0, realized=0.0, last_trade_id=0, epoch_start_ts=0))) == 1


def test_pending_trades_respects_cursor_and_epoch(store):
    store.insert_trades([trade("a", ts=1_000), trade("b", ts=5_000), trade("c", ts=6_000)])
    state = LedgerState(cash=0.0, realized=0.0, last_trade_id=0, epoch_start_ts=4_000)
    assert [t.tx_hash for t in store.pending_trades(state)] == ["b", "c"]
    state.last_trade_id = 2
    assert [t.tx_hash for t in store.pending_trades(state)] == ["c"]


def test_poll_watermark_only_moves_forward(store):
    assert store.poll_watermark(LEADER) == 0
    store.set_poll_watermark(LEADER.upper(), 3_000, 1)
    store.set_poll_watermark(LEADER, 2_000, 2)
    assert store.poll_watermark(LEADER) == 3_000
    assert store.poll_watermark("0xnobody") == 0
    # pushed trades never move it
    store.insert_trades([trade("a", ts=9_000)])
    assert store.poll_watermark(LEADER) == 3_000


def test_market_exposure_sums_outcomes(store):
    with store.atomic() as con:
        for outcome, size, px in (("Yes", 100.0, 0.5), ("No", 40.0, 0.25)):
            store.upsert_position(con, FollowerPosition(PositionKey("m1", outcome, LEADER), size, px, 1))
        store.upsert_position(con, FollowerPosition(PositionKey("m2", "Yes", LEADER), 10.0, 0.5, 1))
        store.upsert_position(con, FollowerPosition(PositionKey("m1", "Yes", "0xother"), 10.0, 0.5, 1))
        assert store.market_exposure(con, "m1", LEADER) == pytest.approx(60.0)
        assert store.market_exposure(con, "m3", LEADER) == 0.0


def test_latest_mark_prices_uses_newest_trade(store):
    store.insert_trades([
        trade("a", price=0.40, ts=1_000),
        trade("b", price=0.55, ts=3_000),
        trade("c", price=0.45, ts=2_000),
        trade("d", price=0.20, ts=3_000, outcome="No"),
        trade("e", price=0.30, ts=3_000, outcome="No"),
    ])
    marks = store.latest_mark_prices()
    assert marks[("m1", "Yes")] == pytest.approx(0.55)
    # timestamp tie: the later insert wins
    assert marks[("m1", "No")] == pytest.approx(0.30)


def test_state_roundtrip_in_transaction(store):
    assert store.load_state() is None
    with store.atomic() as con:
        store.save_state(con, LedgerState(cash=10.0, realized=1.0, last_trade_id=3, epoch_start_ts=7))
    assert store.load_state() == LedgerState(cash=10.0, realized=1.0, last_trade_id=3, epoch_start_ts=7)


def test_atomic_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.atomic() as con:
            store.save_state(con, LedgerState(cash=10.0, realized=0.0, last_trade_id=1, epoch_start_ts=0))
            raise RuntimeError("boom")
    assert store.load_state() is None


def test_cursor_only_moves_forward():
    state = LedgerState(cash=0.0, realized=0.0, last_trade_id=5, epoch_start_ts=0)
    advance_cursor(state, 6)
    assert state.last_trade_id == 6
    for bad in (6, 3):
        with pytest.raises(InvariantViolation):
            advance_cursor(state, bad)
    assert state.last_trade_id == 6


def test_snapshots_bucketed_keeps_latest_per_bucket(store):
    with store.atomic() as con:
        for ts, eq in ((1_000, 1.0), (2_000, 2.0), (301_000, 3.0), (302_000, 4.0), (601_000, 5.0)):
            store.insert_snapshot(con, PortfolioSnapshot(timestamp=ts, equity=eq, cash=eq, unrealized=0.0, realized=0.0))
    rows = store.snapshots_bucketed(300, 10)
    assert [s.timestamp for s in rows] == [2_000, 302_000, 601_000]
    assert [s.equity for s in rows] == [2.0, 4.0, 5.0]
    assert [s.timestamp for s in store.snapshots_bucketed(300, 2)] == [302_000, 601_000]
    assert len(store.snapshots()) == 5
    with pytest.raises(ValueError):
        store.snapshots_bucketed(0, 10)


def test_market_upsert_and_titles(store):
    assert not store.has_market("m1")
    store.upsert_market({"condition_id": "m1", "slug": "s", "title": "Will it rain?"}, 1)
    store.upsert_market({"condition_id": "m1", "slug": "s", "title": "Will it rain tomorrow?"}, 2)
    assert store.has_market("m1")
    assert store.market_titles() == {"m1": "Will it rain tomorrow?"}


def _legacy_db(path):
    con = sqlite3.connect(path)
    con.executescript(
        """
        CREATE TABLE paper_positions (
          condition_id TEXT NOT NULL,
          outcome TEXT,
          leader_wallet TEXT NOT NULL,
          size REAL NOT NULL,
          avg_price REAL NOT NULL,
          updated_at INTEGER NOT NULL,
          PRIMARY KEY(condition_id, outcome, leader_wallet)
        );
        CREATE TABLE paper_fills (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          leader_trade_id INTEGER,
          leader_wallet TEXT NOT NULL,
          condition_id TEXT NOT NULL,
          side TEXT NOT NULL,
          price REAL NOT NULL,
          size REAL NOT NULL,
          notional REAL NOT NULL,
          timestamp INTEGER NOT NULL,
          rule_label TEXT,
          created_at INTEGER NOT NULL
        );
        CREATE TABLE paper_state (key TEXT PRIMARY KEY, value TEXT);
        INSERT INTO paper_positions VALUES ('m1', NULL, '0xleader', 10, 0.4, 1);
        INSERT INTO paper_positions VALUES ('m1', NULL, '0xleader', 10, 0.6, 2);
        INSERT INTO paper_positions VALUES ('m2', NULL, '0xleader', 5, 0.3, 3);
        INSERT INTO paper_state VALUES ('paper_cash', '900');
        INSERT INTO paper_state VALUES ('paper_realized', '5');
        INSERT INTO paper_state VALUES ('last_trade_id', '7');
        INSERT INTO paper_state VALUES ('paper_start_ts', '1000');
        """
    )
    con.commit()
    con.close()


def test_migrates_legacy_database(tmp_path):
    path = str(tmp_path / "legacy.db")
    _legacy_db(path)
    st = LedgerStore(path)
    stats = st.init()
    assert stats["positions_merged"] == 3
    assert stats["state_migrated"] == 1
    assert stats["columns_added"] >= 2

    by_market = {p.key.market: p for p in st.positions()}
    assert by_market["m1"].key.outcome == ""
    assert by_market["m1"].size == pytest.approx(20.0)
    assert by_market["m1"].avg_price == pytest.approx(0.5)
    assert by_market["m1"].updated_at == 2
    assert by_market["m2"].size == pytest.approx(5.0)
    assert st.load_state() == LedgerState(cash=900.0, realized=5.0, last_trade_id=7, epoch_start_ts=1000)

    # idempotent
    assert st.init() == {"columns_added": 0, "positions_merged": 0, "state_migrated": 0}
