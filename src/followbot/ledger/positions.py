from __future__ import annotations

import sqlite3
from typing import Optional, Tuple

from ..errors import InvariantViolation
from .model import FollowerPosition, PositionKey, Side, side_sign


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


def apply(
    prev: Optional[FollowerPosition],
    key: PositionKey,
    side: Side,
    size: float,
    price: float,
    timestamp: int,
) -> Tuple[Optional[FollowerPosition], float]:
    """Apply one follower fill to a position.

    Returns the new position (None when it closes to exactly zero) and the realized
    P&L delta. Realized P&L is `(price - avg) * reduced` for longs and shorts alike.
    A fill that would carry the position through zero raises InvariantViolation.
    """
    if size <= 0:
        raise InvariantViolation(f"fill size must be positive, got {size}")
    signed = size * side_sign(side)
    prev_size = prev.size if prev is not None else 0.0
    prev_avg = prev.avg_price if prev is not None else 0.0
    combined = prev_size + signed

    if combined == 0:
        realized = 0.0
        if prev_size != 0 and _sign(prev_size) != _sign(signed):
            realized = (price - prev_avg) * min(abs(size), abs(prev_size))
        return None, realized

    if prev_size == 0 or _sign(prev_size) == _sign(signed):
        # opening or adding in the same direction
        new_avg = (prev_avg * abs(prev_size) + price * abs(size)) / (abs(prev_size) + abs(size))
        return FollowerPosition(key=key, size=combined, avg_price=new_avg, updated_at=int(timestamp)), 0.0

    if _sign(prev_size) == _sign(combined):
        # partial reduction, avg price unchanged
        realized = (price - prev_avg) * min(abs(size), abs(prev_size))
        return FollowerPosition(key=key, size=combined, avg_price=prev_avg, updated_at=int(timestamp)), realized

    raise InvariantViolation(
        f"fill {side} {size} would flip position {key.market}/{key.outcome or '-'} from {prev_size} to {combined}"
    )


class PositionBook:
    """Persisting wrapper over `apply` for use inside a ledger transaction."""

    def __init__(self, store):
        self.store = store

    def get(self, con: sqlite3.Connection, key: PositionKey) -> Optional[FollowerPosition]:
        return self.store.get_position(con, key)

    def apply(
        self,
        con: sqlite3.Connection,
        key: PositionKey,
        side: Side,
        size: float,
        price: float,
        timestamp: int,
    ) -> Tuple[Optional[FollowerPosition], float]:
        prev = self.store.get_position(con, key)
        pos, realized = apply(prev, key, side, size, price, timestamp)
        if pos is None:
            self.store.delete_position(con, key)
        else:
            self.store.upsert_position(con, pos)
        return pos, realized
