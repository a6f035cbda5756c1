"""Error taxonomy shared by the ledger, feeds and live execution.

Sizing skips are not errors: they are reported on `SizingDecision.skip_reason`
and still advance the processing cursor.
"""

from __future__ import annotations

from typing import Optional


class FollowbotError(Exception):
    """Base class for followbot errors."""


class ConfigError(FollowbotError, ValueError):
    """Raised when settings are missing or inconsistent."""


class TransientSourceError(FollowbotError):
    """A trade/price source is unavailable or rate limited; safe to retry."""

    def __init__(self, message: str, source: str = "unknown", status: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status = status


class InvariantViolation(FollowbotError):
    """Ledger state would become inconsistent; the trade is rejected, the cursor withheld."""

    def __init__(self, message: str, trade_id: Optional[int] = None):
        super().__init__(message)
        self.trade_id = trade_id


class ExecutionFailure(FollowbotError):
    """A live order submission was rejected by the venue."""
