from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..config.loader import LiveConfig
from ..errors import ExecutionFailure
from ..ledger.model import ExecutionResult, Fill

logger = logging.getLogger(__name__)


def _default_client_factory(cfg: LiveConfig) -> Any:
    # Optional dependency (`live` extra), only needed for real orders
    from py_clob_client.client import ClobClient

    client = ClobClient(cfg.clob_host, key=cfg.private_key, chain_id=cfg.chain_id)
    creds = client.create_or_derive_api_creds()
    return ClobClient(
        cfg.clob_host,
        key=cfg.private_key,
        chain_id=cfg.chain_id,
        creds=creds,
        signature_type=0,
        funder=cfg.funder_address or None,
    )


class LiveExecutor:
    """Mirrors paper fills to the venue.

    DISABLED when live trading is off, DRY_RUN when dry-run is on, otherwise a GTC
    limit order at the fill price. Failures come back as FAILED results; nothing
    here is retried.
    """

    def __init__(self, cfg: LiveConfig, client_factory: Optional[Callable[[LiveConfig], Any]] = None):
        self.cfg = cfg
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None

    def _client_or_init(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(self.cfg)
        return self._client

    def _post(self, fill: Fill, token_id: str) -> str:
        if not token_id:
            raise ExecutionFailure(f"no token id for trade {fill.source_trade_id}")
        from py_clob_client.clob_types import OrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY, SELL

        client = self._client_or_init()
        order = client.create_order(
            OrderArgs(
                token_id=token_id,
                price=round(min(max(fill.price, 0.01), 0.99), 2),
                size=round(fill.size, 2),
                side=BUY if fill.side == "BUY" else SELL,
            )
        )
        resp = client.post_order(order, OrderType.GTC)
        if not isinstance(resp, dict) or not resp.get("success", True):
            raise ExecutionFailure(f"order rejected: {resp}")
        order_id = resp.get("orderID") or resp.get("orderId")
        if not order_id:
            raise ExecutionFailure(f"order response without id: {resp}")
        return str(order_id)

    def submit(self, fill: Fill, token_id: str = "") -> ExecutionResult:
        if not self.cfg.enabled:
            return ExecutionResult(status="DISABLED", error="LIVE_TRADING_DISABLED")
        if self.cfg.dry_run:
            logger.info("live dry run: %s %.4f @ %.4f trade=%d", fill.side, fill.size, fill.price, fill.source_trade_id)
            return ExecutionResult(status="DRY_RUN")
        try:
            order_id = self._post(fill, token_id)
        except Exception as e:
            logger.error("live order failed for trade %d: %s", fill.source_trade_id, e)
            return ExecutionResult(status="FAILED", error=str(e))
        logger.info("LIVE ORDER: %s %.4f @ %.4f | ID: %s", fill.side, fill.size, fill.price, order_id)
        return ExecutionResult(status="POSTED", reference=order_id)
