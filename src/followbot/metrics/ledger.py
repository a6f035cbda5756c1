from __future__ import annotations

from typing import Optional
import os
from prometheus_client import Counter, Gauge, Histogram, REGISTRY

_trades_processed: Optional[Counter] = None
_fills_total: Optional[Counter] = None
_sizing_skips: Optional[Counter] = None
_invariant_violations: Optional[Counter] = None
_realized_pnl_total: Optional[Counter] = None
_equity_usd: Optional[Gauge] = None
_last_trade_id: Optional[Gauge] = None
_run_seconds: Optional[Histogram] = None
_runs_coalesced: Optional[Counter] = None
_feed_retries: Optional[Counter] = None
_feed_trades_ingested: Optional[Counter] = None
_feed_reconnects: Optional[Counter] = None
_live_submissions: Optional[Counter] = None


class _NoOp:
    def labels(self, *args, **kwargs):
        return self
    def inc(self, *args, **kwargs):
        return None
    def set(self, *args, **kwargs):
        return None
    def observe(self, *args, **kwargs):
        return None


def _existing(name: str):
    try:
        coll = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
        if coll is not None:
            return coll
        for coll in list(getattr(REGISTRY, "_collector_to_names", {}).keys()):  # type: ignore[attr-defined]
            if getattr(coll, "_name", None) == name:
                return coll
    except Exception:
        pass
    return None


def _safe_counter(name: str, doc: str, labelnames=()):
    if os.getenv("DISABLE_PROMETHEUS", "0") == "1":
        return _NoOp()
    try:
        return Counter(name, doc, labelnames)
    except ValueError:
        # Already registered (module reloaded in tests)
        return _existing(name) or _existing(name + "_total") or _NoOp()


def _safe_gauge(name: str, doc: str, labelnames=()):
    if os.getenv("DISABLE_PROMETHEUS", "0") == "1":
        return _NoOp()
    try:
        return Gauge(name, doc, labelnames)
    except ValueError:
        return _existing(name) or _NoOp()


def _safe_histogram(name: str, doc: str, buckets=None):
    if os.getenv("DISABLE_PROMETHEUS", "0") == "1":
        return _NoOp()
    try:
        if buckets is not None:
            return Histogram(name, doc, buckets=buckets)
        return Histogram(name, doc)
    except ValueError:
        return _existing(name) or _NoOp()


def get_trades_processed_total():
    """Counter: ledger_trades_processed_total{outcome="filled|skipped|rejected"}"""
    global _trades_processed
    if _trades_processed is None:
        _trades_processed = _safe_counter("ledger_trades_processed_total", "Leader trades consumed by the ledger", ["outcome"])
    return _trades_processed


def get_fills_total():
    global _fills_total
    if _fills_total is None:
        _fills_total = _safe_counter("ledger_fills_total", "Follower fills recorded", ["side"])
    return _fills_total


def get_sizing_skips_total():
    global _sizing_skips
    if _sizing_skips is None:
        _sizing_skips = _safe_counter("ledger_sizing_skips_total", "Leader trades sized to zero", ["reason"])
    return _sizing_skips


def get_invariant_violations_total():
    global _invariant_violations
    if _invariant_violations is None:
        _invariant_violations = _safe_counter("ledger_invariant_violations_total", "Trades rejected by ledger invariants")
    return _invariant_violations


def get_realized_pnl_total():
    """Counter: realized PnL split by direction, since counters cannot decrease."""
    global _realized_pnl_total
    if _realized_pnl_total is None:
        _realized_pnl_total = _safe_counter("ledger_realized_pnl_total", "Realized PnL in USD", ["direction"])
    return _realized_pnl_total


def get_equity_usd():
    """Gauge: ledger_equity_usd{component="equity|cash|unrealized|realized"}"""
    global _equity_usd
    if _equity_usd is None:
        _equity_usd = _safe_gauge("ledger_equity_usd", "Follower portfolio valuation in USD", ["component"])
    return _equity_usd


def get_last_trade_id():
    global _last_trade_id
    if _last_trade_id is None:
        _last_trade_id = _safe_gauge("ledger_last_trade_id", "Processing cursor position")
    return _last_trade_id


def get_run_seconds():
    global _run_seconds
    if _run_seconds is None:
        _run_seconds = _safe_histogram(
            "ledger_run_seconds",
            "Duration of one ledger run",
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30),
        )
    return _run_seconds


def get_runs_coalesced_total():
    global _runs_coalesced
    if _runs_coalesced is None:
        _runs_coalesced = _safe_counter("ledger_runs_coalesced_total", "Run requests merged into an in-flight run")
    return _runs_coalesced


def get_feed_retries_total():
    global _feed_retries
    if _feed_retries is None:
        _feed_retries = _safe_counter("feed_retries_total", "Retried external fetches", ["source"])
    return _feed_retries


def get_feed_trades_ingested_total():
    """Counter: feed_trades_ingested_total{source="poll|live"} (new rows only)"""
    global _feed_trades_ingested
    if _feed_trades_ingested is None:
        _feed_trades_ingested = _safe_counter("feed_trades_ingested_total", "New leader trades stored", ["source"])
    return _feed_trades_ingested


def get_feed_reconnects_total():
    global _feed_reconnects
    if _feed_reconnects is None:
        _feed_reconnects = _safe_counter("feed_reconnects_total", "Live feed reconnect attempts")
    return _feed_reconnects


def get_live_submissions_total():
    global _live_submissions
    if _live_submissions is None:
        _live_submissions = _safe_counter("live_submissions_total", "Live order submissions", ["status"])
    return _live_submissions


def record_realized(delta: float) -> None:
    if not delta:
        return
    try:
        direction = "profit" if delta > 0 else "loss"
        get_realized_pnl_total().labels(direction).inc(abs(delta))
    except Exception:
        pass


def set_valuation_gauges(equity: float, cash: float, unrealized: float, realized: float) -> None:
    g = get_equity_usd()
    for component, val in (("equity", equity), ("cash", cash), ("unrealized", unrealized), ("realized", realized)):
        try:
            g.labels(component=component).set(float(val))  # type: ignore[attr-defined]
        except Exception:
            continue
