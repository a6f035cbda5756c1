from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import websockets

from ..ledger.model import LeaderTrade
from ..metrics.ledger import get_feed_reconnects_total
from .polymarket import parse_trade

logger = logging.getLogger(__name__)

SUBSCRIBE = {"action": "subscribe", "topics": ["activity"], "types": ["trades"]}

TradeHandler = Callable[[LeaderTrade], Union[None, Awaitable[None]]]


def parse_live_message(message: Union[str, bytes], wallets: Iterable[str]) -> Optional[LeaderTrade]:
    """Parse one socket message into a trade for a followed wallet.

    Raises ValueError for payloads that are not JSON objects; returns None for
    trades of other wallets or payloads without the required fields.
    """
    msg = json.loads(message)
    if not isinstance(msg, dict):
        raise ValueError("socket payload is not an object")
    t = msg.get("payload") or msg.get("data") or msg
    if not isinstance(t, dict):
        raise ValueError("socket payload has no trade body")
    wallet = str(t.get("proxyWallet") or "").lower()
    if not wallet or wallet not in {w.lower() for w in wallets}:
        return None
    if not t.get("asset") and not t.get("assetId"):
        t = dict(t, asset=t.get("tokenId") or t.get("positionId") or "")
    return parse_trade(t)


def backoff_delay(attempt: int, initial_ms: int, max_ms: int) -> float:
    """Jittered exponential reconnect delay in seconds."""
    base = min(float(max_ms), float(initial_ms) * (2 ** max(0, attempt - 1)))
    return random.uniform(base / 2.0, base) / 1000.0


class LiveTradeFeed:
    """Push feed of leader trades over the real-time data socket.

    Every parsed trade for a followed wallet is handed to `on_trade`. The socket
    reconnects forever with jittered exponential backoff until `stop()` is called.
    """

    def __init__(
        self,
        url: str,
        wallets: Iterable[str],
        on_trade: TradeHandler,
        reconnect_initial_ms: int = 1_000,
        reconnect_max_ms: int = 60_000,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.url = url
        self.wallets = [w.lower() for w in wallets]
        self.on_trade = on_trade
        self.reconnect_initial_ms = int(reconnect_initial_ms)
        self.reconnect_max_ms = int(reconnect_max_ms)
        self._connect = connect
        self._stop = asyncio.Event()
        self._reconnects = get_feed_reconnects_total()
        self.seen = 0
        self.malformed = 0

    def stop(self) -> None:
        self._stop.set()

    async def handle_message(self, message: Union[str, bytes]) -> None:
        try:
            trade = parse_live_message(message, self.wallets)
        except ValueError as e:
            self.malformed += 1
            logger.debug("malformed socket message (%d so far): %s", self.malformed, e)
            return
        if trade is None:
            return
        self.seen += 1
        if self.seen % 20 == 0:
            logger.info("[rtds] %d trades seen; last wallet %s market %s", self.seen, trade.leader_wallet, trade.market)
        res = self.on_trade(trade)
        if asyncio.iscoroutine(res):
            await res

    async def _session(self) -> None:
        async with self._connect(self.url, ping_interval=20) as ws:
            logger.info("RTDS connected: %s", self.url)
            self._attempt = 0
            await ws.send(json.dumps(SUBSCRIBE))
            async for message in ws:
                if self._stop.is_set():
                    return
                await self.handle_message(message)

    async def run_forever(self) -> None:
        self._attempt = 0
        while not self._stop.is_set():
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("RTDS disconnected: %s: %s", type(e).__name__, e)
            if self._stop.is_set():
                break
            self._attempt += 1
            self._reconnects.inc()
            delay = backoff_delay(self._attempt, self.reconnect_initial_ms, self.reconnect_max_ms)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
