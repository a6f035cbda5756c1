from __future__ import annotations

from typing import Optional

from ..config.loader import PaperConfig
from .model import LeaderTrade, SizingDecision

SKIP_ALLOCATION_FULL = "allocation_full"
SKIP_NO_EXPOSURE = "no_exposure"
SKIP_NO_CASH = "no_cash"
SKIP_ZERO_TARGET = "zero_target"
SKIP_UNKNOWN_LEADER = "unknown_leader"


def fill_price(side: str, price: float, slippage_bps: float) -> float:
    slip = slippage_bps / 10_000.0
    return price * (1.0 + slip) if side == "BUY" else price * (1.0 - slip)


def size_trade(
    trade: LeaderTrade,
    follower_equity: float,
    exposure_notional: float,
    cash: float,
    num_leaders: int,
    leader_equity: Optional[float],
    config: PaperConfig,
    held_size: Optional[float] = None,
) -> SizingDecision:
    """Map one leader trade to a follower fill size.

    Pure: all inputs are passed in. A skip is returned as a decision with
    `skip_reason` set, never raised.
    """
    px = fill_price(trade.side, trade.price, config.slippage_bps)
    per_leader_allocation = follower_equity / max(1, int(num_leaders))
    leader_notional = trade.size * trade.price

    leader_fraction: Optional[float] = None
    if config.size_mode == "LEADER_PCT":
        if leader_equity is not None and leader_equity > 0:
            leader_fraction = leader_notional / leader_equity
        else:
            leader_fraction = config.fallback_leader_pct
        target = leader_fraction * per_leader_allocation
    else:
        target = min(leader_notional, config.fixed_cap_per_trade_usd)

    def skip(reason: str, desired: float = 0.0) -> SizingDecision:
        return SizingDecision(
            copy_size=0.0,
            fill_price=px,
            desired_notional=desired,
            target_notional=target,
            leader_fraction=leader_fraction,
            skip_reason=reason,
        )

    if target <= 0 or px <= 0:
        return skip(SKIP_ZERO_TARGET)

    if trade.side == "BUY":
        room = per_leader_allocation - exposure_notional
        if room <= 0:
            return skip(SKIP_ALLOCATION_FULL)
        if cash <= 0:
            return skip(SKIP_NO_CASH)
        desired = min(max(0.0, min(target, room)), cash)
        if desired <= 0:
            return skip(SKIP_ZERO_TARGET, desired)
        copy_size = desired / px
    else:
        max_sell = abs(exposure_notional)
        if max_sell <= 0:
            return skip(SKIP_NO_EXPOSURE)
        desired = max(0.0, min(target, max_sell))
        if desired <= 0:
            return skip(SKIP_ZERO_TARGET, desired)
        copy_size = desired / px
        if held_size is not None and copy_size > abs(held_size):
            copy_size = abs(held_size)
            desired = copy_size * px

    return SizingDecision(
        copy_size=copy_size,
        fill_price=px,
        desired_notional=desired,
        target_notional=target,
        leader_fraction=leader_fraction,
    )
