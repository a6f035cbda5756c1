from __future__ import annotations

from typing import Dict, Iterable, Tuple

from .model import FollowerPosition, LedgerState, Side, Valuation

Marks = Dict[Tuple[str, str], float]


def cash_delta(side: Side, copy_size: float, fill_price: float) -> float:
    notional = copy_size * fill_price
    return -notional if side == "BUY" else notional


def mark_for(pos: FollowerPosition, marks: Marks) -> float:
    """Latest trade price for the position's market/outcome, else its entry price."""
    px = marks.get((pos.key.market, pos.key.outcome))
    return float(px) if px is not None else pos.avg_price


def value(state: LedgerState, positions: Iterable[FollowerPosition], marks: Marks) -> Valuation:
    """equity = cash + Σ size*mark, unrealized = Σ size*(mark - avg), from one read."""
    position_value = 0.0
    unrealized = 0.0
    for pos in positions:
        mark = mark_for(pos, marks)
        position_value += pos.size * mark
        unrealized += pos.size * (mark - pos.avg_price)
    return Valuation(
        cash=state.cash,
        realized=state.realized,
        unrealized=unrealized,
        position_value=position_value,
        equity=state.cash + position_value,
    )
