from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config.loader import PaperConfig
from ..errors import InvariantViolation
from ..events.bus import publish as publish_event
from ..events.schema import (
    EventEnvelope,
    FillRecorded,
    InvariantViolationDetected,
    LedgerReset,
    LiveSubmission,
    SnapshotRecorded,
    TradeSkipped,
)
from ..logs.audit_log import append_jsonl, log_ledger_event, sizing_record
from ..metrics.ledger import (
    get_fills_total,
    get_invariant_violations_total,
    get_last_trade_id,
    get_live_submissions_total,
    get_run_seconds,
    get_sizing_skips_total,
    get_trades_processed_total,
    record_realized,
)
from . import valuation
from .model import (
    ExecutionResult,
    Fill,
    FollowerPosition,
    LeaderTrade,
    LedgerState,
    PortfolioSnapshot,
    PositionKey,
    SizingDecision,
    Valuation,
)
from .positions import PositionBook
from .sizing import SKIP_UNKNOWN_LEADER, size_trade
from .snapshots import SnapshotRecorder
from .store import LedgerStore

log = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def advance_cursor(state: LedgerState, trade_id: int) -> None:
    """Move the cursor past `trade_id`; it only ever moves forward."""
    if trade_id <= state.last_trade_id:
        raise InvariantViolation(
            f"cursor would move from {state.last_trade_id} to {trade_id}", trade_id=trade_id
        )
    state.last_trade_id = int(trade_id)


@dataclass
class RunReport:
    processed: int = 0
    filled: int = 0
    skipped: int = 0
    last_trade_id: int = 0
    snapshot: Optional[PortfolioSnapshot] = None


class CopyLedger:
    """Replays new leader trades into the follower paper portfolio.

    Each trade is sized, applied to its position, cash and realized P&L, recorded as a
    fill and consumed by the cursor inside one SQLite transaction. A batch that consumed
    anything ends with one portfolio snapshot.
    """

    def __init__(
        self,
        store: LedgerStore,
        paper: PaperConfig,
        wallets: Iterable[str],
        leader_equity: Optional[Callable[[str], Optional[float]]] = None,
        executor: Any = None,
        audit_log_path: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.paper = paper
        self.wallets = [w.lower() for w in wallets]
        self.leader_equity = leader_equity
        self.executor = executor
        self.audit_log_path = audit_log_path
        self.clock = clock
        self.book = PositionBook(store)
        self.recorder = SnapshotRecorder(store)
        # Metrics
        self._processed = get_trades_processed_total()
        self._fills = get_fills_total()
        self._skips = get_sizing_skips_total()
        self._violations = get_invariant_violations_total()
        self._cursor_gauge = get_last_trade_id()
        self._run_seconds = get_run_seconds()
        self._live = get_live_submissions_total()

    # ---- lifecycle ----

    def ensure_initialized(self, now: Optional[int] = None) -> LedgerState:
        ts = int(now if now is not None else self.clock())
        with self.store.atomic() as con:
            state = self.store.load_state(con)
            if state is not None:
                return state
            state = LedgerState(cash=self.paper.start_equity, realized=0.0, last_trade_id=0, epoch_start_ts=ts)
            self.store.save_state(con, state)
            self.recorder.record(con, state, ts)
        log.info("ledger initialized: start_equity=%.2f epoch_start_ts=%d", state.cash, ts)
        return state

    def reset(self, now: Optional[int] = None) -> LedgerState:
        """Start a fresh epoch; trades logged so far are never applied to it."""
        ts = int(now if now is not None else self.clock())
        with self.store.atomic() as con:
            state = LedgerState(
                cash=self.paper.start_equity,
                realized=0.0,
                last_trade_id=self.store.max_trade_id(con),
                epoch_start_ts=ts,
            )
            self.store.reset_epoch(con, state)
            self.recorder.record(con, state, ts)
        self._cursor_gauge.set(state.last_trade_id)
        log.info("ledger reset: start_equity=%.2f last_trade_id=%d epoch_start_ts=%d",
                 state.cash, state.last_trade_id, ts)
        try:
            evt = LedgerReset(ts=ts, start_equity=state.cash, last_trade_id=state.last_trade_id)
            publish_event(EventEnvelope(correlation_id=f"reset:{ts}", event=evt))
        except Exception:
            pass
        return state

    # ---- apply path ----

    def run_once(self, now: Optional[int] = None) -> RunReport:
        started = time.perf_counter()
        ts = int(now if now is not None else self.clock())
        state = self.ensure_initialized(ts)
        report = RunReport(last_trade_id=state.last_trade_id)
        pending = self.store.pending_trades(state)
        if not pending:
            return report

        # Allocation is fixed for the whole batch
        start_val = self.valuation()
        equity_cache: Dict[str, Optional[float]] = {}
        error: Optional[BaseException] = None

        for trade in pending:
            try:
                fill = self._process(trade, start_val.equity, equity_cache, ts, report)
            except InvariantViolation as e:
                if e.trade_id is None:
                    e.trade_id = trade.id
                self._on_violation(trade, e, ts)
                error = e
                break
            except Exception as e:
                log.exception("ledger run aborted at trade %d", trade.id)
                error = e
                break
            report.processed += 1
            report.last_trade_id = trade.id
            self._cursor_gauge.set(trade.id)
            if fill is not None:
                self._submit_live(fill, trade.asset_id, ts)

        if report.processed:
            with self.store.atomic() as con:
                st = self.store.load_state(con)
                report.snapshot = self.recorder.record(con, st, ts)
            self._publish_snapshot(report)
        self._run_seconds.observe(time.perf_counter() - started)
        log.info("ledger run: processed=%d filled=%d skipped=%d last_trade_id=%d",
                 report.processed, report.filled, report.skipped, report.last_trade_id)
        if error is not None:
            raise error
        return report

    def _leader_equity(self, wallet: str, cache: Dict[str, Optional[float]]) -> Optional[float]:
        if self.paper.size_mode != "LEADER_PCT" or self.leader_equity is None:
            return None
        if wallet not in cache:
            try:
                cache[wallet] = self.leader_equity(wallet)
            except Exception as e:
                log.warning("leader equity unavailable for %s, using fallback fraction: %s", wallet, e)
                cache[wallet] = None
        return cache[wallet]

    def _process(
        self,
        trade: LeaderTrade,
        follower_equity: float,
        equity_cache: Dict[str, Optional[float]],
        ts: int,
        report: RunReport,
    ) -> Optional[Fill]:
        wallet = trade.leader_wallet.lower()
        known = wallet in self.wallets
        leader_eq = self._leader_equity(wallet, equity_cache) if known else None
        decision: Optional[SizingDecision] = None
        fill: Optional[Fill] = None

        with self.store.atomic() as con:
            state = self.store.load_state(con)
            if state is None:
                raise InvariantViolation("ledger state missing", trade_id=trade.id)
            if known:
                key = PositionKey.of(trade.market, trade.outcome, wallet)
                pos = self.book.get(con, key)
                # BUY is capped by the leader's whole market; SELL only unwinds this outcome
                if trade.side == "BUY":
                    exposure = self.store.market_exposure(con, key.market, wallet)
                else:
                    exposure = pos.exposure_notional if pos else 0.0
                decision = size_trade(
                    trade,
                    follower_equity=follower_equity,
                    exposure_notional=exposure,
                    cash=state.cash,
                    num_leaders=len(self.wallets),
                    leader_equity=leader_eq,
                    config=self.paper,
                    held_size=pos.size if pos else None,
                )
                if not decision.skipped:
                    _, realized = self.book.apply(
                        con, key, trade.side, decision.copy_size, decision.fill_price, trade.timestamp
                    )
                    state.cash += valuation.cash_delta(trade.side, decision.copy_size, decision.fill_price)
                    state.realized += realized
                    if state.cash < -1e-9:
                        raise InvariantViolation(f"cash would go negative ({state.cash:.6f})", trade_id=trade.id)
                    notional = decision.copy_size * decision.fill_price
                    fill = Fill(
                        source_trade_id=trade.id,
                        leader_wallet=wallet,
                        market=key.market,
                        outcome=key.outcome,
                        side=trade.side,
                        price=decision.fill_price,
                        size=decision.copy_size,
                        signed_notional=notional if trade.side == "BUY" else -notional,
                        timestamp=trade.timestamp,
                        realized_pnl=realized,
                    )
                    self.store.insert_fill(con, fill, ts)
            advance_cursor(state, trade.id)
            self.store.save_state(con, state)

        # committed
        if fill is not None:
            report.filled += 1
            self._processed.labels("filled").inc()
            self._fills.labels(fill.side).inc()
            record_realized(fill.realized_pnl)
            self._audit(trade, decision, "filled", ts)
            try:
                evt = FillRecorded(
                    ts=ts,
                    market=fill.market,
                    leader_wallet=wallet,
                    side=fill.side,
                    trade_id=trade.id,
                    outcome=fill.outcome,
                    size=fill.size,
                    price=fill.price,
                    signed_notional=fill.signed_notional,
                    realized_pnl=fill.realized_pnl,
                    cash_after=state.cash,
                )
                publish_event(EventEnvelope(correlation_id=f"{wallet}:{trade.id}", sequence=trade.id, event=evt))
            except Exception:
                pass
        else:
            reason = decision.skip_reason if decision is not None else SKIP_UNKNOWN_LEADER
            report.skipped += 1
            self._processed.labels("skipped").inc()
            self._skips.labels(reason).inc()
            self._audit(trade, decision, "skipped", ts, {"skip_reason": reason})
            try:
                evt = TradeSkipped(
                    ts=ts,
                    market=trade.market,
                    leader_wallet=wallet,
                    side=trade.side,
                    trade_id=trade.id,
                    reason=str(reason),
                    target_notional=decision.target_notional if decision is not None else 0.0,
                )
                publish_event(EventEnvelope(correlation_id=f"{wallet}:{trade.id}", sequence=trade.id, event=evt))
            except Exception:
                pass
        return fill

    def _audit(self, trade: LeaderTrade, decision: Optional[SizingDecision], outcome: str, ts: int,
               extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.audit_log_path:
            return
        append_jsonl(self.audit_log_path, sizing_record(trade, decision, outcome, ts=ts, extra=extra))

    def _on_violation(self, trade: LeaderTrade, err: InvariantViolation, ts: int) -> None:
        self._violations.inc()
        self._processed.labels("rejected").inc()
        log_ledger_event(
            "invariant_violation",
            {"trade_id": trade.id, "leader_wallet": trade.leader_wallet, "market": trade.market, "reason": str(err)},
            severity="ERROR",
        )
        try:
            evt = InvariantViolationDetected(
                ts=ts,
                market=trade.market,
                leader_wallet=trade.leader_wallet,
                side=trade.side,
                trade_id=trade.id,
                reason=str(err),
            )
            publish_event(EventEnvelope(correlation_id=f"{trade.leader_wallet}:{trade.id}", sequence=trade.id, event=evt))
        except Exception:
            pass

    def _submit_live(self, fill: Fill, token_id: str, ts: int) -> None:
        if self.executor is None:
            return
        try:
            result = self.executor.submit(fill, token_id=token_id)
        except Exception as e:
            log.exception("live executor raised for trade %d", fill.source_trade_id)
            result = ExecutionResult(status="FAILED", error=str(e))
        try:
            self.store.insert_live_fill(fill, result, ts)
        except Exception as e:
            log.error("could not record live fill for trade %d: %s", fill.source_trade_id, e)
            result = ExecutionResult(status="FAILED", reference=result.reference, error=f"not recorded: {e}")
        self._live.labels(result.status).inc()
        if result.status == "FAILED":
            log.warning("live submission failed for trade %d: %s", fill.source_trade_id, result.error)
        try:
            evt = LiveSubmission(
                ts=ts,
                market=fill.market,
                leader_wallet=fill.leader_wallet,
                side=fill.side,
                trade_id=fill.source_trade_id,
                status=result.status,
                reference=result.reference,
                error=result.error,
            )
            publish_event(EventEnvelope(correlation_id=f"live:{fill.source_trade_id}", event=evt))
        except Exception:
            pass

    def _publish_snapshot(self, report: RunReport) -> None:
        snap = report.snapshot
        if snap is None:
            return
        try:
            evt = SnapshotRecorded(
                ts=snap.timestamp,
                equity=snap.equity,
                cash=snap.cash,
                unrealized=snap.unrealized,
                realized=snap.realized,
                last_trade_id=report.last_trade_id,
            )
            publish_event(EventEnvelope(correlation_id=f"snapshot:{snap.timestamp}", event=evt))
        except Exception:
            pass

    # ---- read side ----

    def state(self) -> Optional[LedgerState]:
        return self.store.load_state()

    def valuation(self) -> Valuation:
        with self.store.connection() as con:
            state = self.store.load_state(con)
            if state is None:
                state = LedgerState(cash=self.paper.start_equity, realized=0.0, last_trade_id=0, epoch_start_ts=0)
            return valuation.value(state, self.store.positions(con), self.store.latest_mark_prices(con))

    def positions(self) -> List[FollowerPosition]:
        return self.store.positions()

    def fills(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.store.fills(limit)

    def closed_fills(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.store.fills(limit, side="SELL")

    def snapshots_bucketed(self, interval_s: int = 300, limit: int = 288) -> List[PortfolioSnapshot]:
        return self.store.snapshots_bucketed(interval_s, limit)

    def allocation(self) -> Dict[str, float]:
        v = self.valuation()
        n = max(1, len(self.wallets))
        return {"equity": v.equity, "cash": v.cash, "leaders": float(len(self.wallets)), "per_leader": v.equity / n}
