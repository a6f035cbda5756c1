from __future__ import annotations

from typing import List, Literal, Optional, Union
from pydantic import BaseModel


# ---- Base + envelope ----

class BaseEvent(BaseModel):
    event_type: str
    ts: int
    run_id: str = "r1"
    market: str = ""
    leader_wallet: Optional[str] = None
    side: Optional[str] = None  # BUY|SELL
    tags: List[str] = []


class EventEnvelope(BaseModel):
    schema_version: str = "v1"
    correlation_id: str
    sequence: int = 0
    event: BaseEvent


# ---- Event types ----

class FillRecorded(BaseEvent):
    event_type: Literal["fill_recorded"] = "fill_recorded"
    trade_id: int
    outcome: str = ""
    size: float
    price: float
    signed_notional: float
    realized_pnl: float = 0.0
    cash_after: float


class TradeSkipped(BaseEvent):
    event_type: Literal["trade_skipped"] = "trade_skipped"
    trade_id: int
    reason: str
    target_notional: float = 0.0


class InvariantViolationDetected(BaseEvent):
    event_type: Literal["invariant_violation"] = "invariant_violation"
    trade_id: int
    reason: str


class LiveSubmission(BaseEvent):
    event_type: Literal["live_submission"] = "live_submission"
    trade_id: int
    status: str
    reference: Optional[str] = None
    error: Optional[str] = None


class SnapshotRecorded(BaseEvent):
    event_type: Literal["snapshot_recorded"] = "snapshot_recorded"
    equity: float
    cash: float
    unrealized: float
    realized: float
    last_trade_id: int


class LedgerReset(BaseEvent):
    event_type: Literal["ledger_reset"] = "ledger_reset"
    start_equity: float
    last_trade_id: int


class Heartbeat(BaseEvent):
    event_type: Literal["heartbeat"] = "heartbeat"
    service: str = "ledger"


AnyEvent = Union[
    FillRecorded,
    TradeSkipped,
    InvariantViolationDetected,
    LiveSubmission,
    SnapshotRecorded,
    LedgerReset,
    Heartbeat,
]
