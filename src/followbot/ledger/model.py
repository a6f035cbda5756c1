from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

Side = Literal["BUY", "SELL"]
SizeMode = Literal["LEADER_PCT", "FIXED"]
ExecutionStatus = Literal["POSTED", "DRY_RUN", "DISABLED", "FAILED"]

UNSPECIFIED_OUTCOME = ""


def normalize_outcome(outcome: Optional[str]) -> str:
    """Map a missing outcome to the canonical empty-string sentinel."""
    if outcome is None:
        return UNSPECIFIED_OUTCOME
    return str(outcome).strip()


def normalize_side(side: Optional[str]) -> Side:
    return "SELL" if str(side or "").upper() == "SELL" else "BUY"


def side_sign(side: Side) -> int:
    return 1 if side == "BUY" else -1


@dataclass(frozen=True)
class LeaderTrade:
    id: int
    leader_wallet: str
    tx_hash: str
    market: str
    asset_id: str
    outcome: str
    side: Side
    size: float
    price: float
    timestamp: int
    market_slug: Optional[str] = None
    market_title: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.size * self.price


@dataclass(frozen=True)
class PositionKey:
    market: str
    outcome: str
    leader_wallet: str

    @classmethod
    def of(cls, market: str, outcome: Optional[str], leader_wallet: str) -> "PositionKey":
        return cls(market=market, outcome=normalize_outcome(outcome), leader_wallet=leader_wallet.lower())


@dataclass
class FollowerPosition:
    key: PositionKey
    size: float
    avg_price: float
    updated_at: int

    @property
    def exposure_notional(self) -> float:
        return self.size * self.avg_price


@dataclass(frozen=True)
class Fill:
    source_trade_id: int
    leader_wallet: str
    market: str
    outcome: str
    side: Side
    price: float
    size: float
    signed_notional: float
    timestamp: int
    rule_label: str = "paper"
    realized_pnl: float = 0.0


@dataclass
class LedgerState:
    cash: float
    realized: float
    last_trade_id: int
    epoch_start_ts: int


@dataclass(frozen=True)
class PortfolioSnapshot:
    timestamp: int
    equity: float
    cash: float
    unrealized: float
    realized: float


@dataclass(frozen=True)
class Valuation:
    cash: float
    realized: float
    unrealized: float
    position_value: float
    equity: float


@dataclass(frozen=True)
class SizingDecision:
    """Outcome of sizing one leader trade.

    Attributes:
        copy_size: Follower shares to trade (0 when skipped)
        fill_price: Leader price adjusted for slippage
        desired_notional: Notional after allocation/cash/exposure clamps
        target_notional: Notional before clamps
        leader_fraction: Share of leader equity the trade represents (LEADER_PCT only)
        skip_reason: Set when the trade produces no fill
    """

    copy_size: float
    fill_price: float
    desired_notional: float
    target_notional: float
    leader_fraction: Optional[float] = None
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


@dataclass(frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    reference: Optional[str] = None
    error: Optional[str] = None
