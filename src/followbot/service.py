"""
Long-running ledger service.

One asyncio worker owns the ledger apply path. Polling ticks and live feed deliveries
only request a run; requests that arrive while a run is in flight collapse into a
single follow-up run, so runs never overlap. The synchronous ledger and ingestion
code runs in worker threads via `asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List

from .errors import InvariantViolation
from .events.bus import publish as publish_event
from .events.schema import EventEnvelope, Heartbeat
from .ledger.model import LeaderTrade
from .metrics.ledger import get_runs_coalesced_total

log = logging.getLogger(__name__)


class LedgerService:
    def __init__(self, ledger: Any, ingestor: Any = None, poll_interval_ms: int = 10_000, feed: Any = None):
        self.ledger = ledger
        self.ingestor = ingestor
        self.poll_interval_ms = int(poll_interval_ms)
        self.feed = feed
        self.runs = 0
        self.failures = 0
        self._dirty = False
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop = asyncio.Event()
        self._coalesced = get_runs_coalesced_total()

    def request_run(self) -> None:
        if self._dirty:
            self._coalesced.inc()
        self._dirty = True
        self._idle.clear()
        self._wake.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self.feed is not None:
            self.feed.stop()

    async def worker(self) -> None:
        while not self._stop.is_set():
            await self._wake.wait()
            self._wake.clear()
            while self._dirty and not self._stop.is_set():
                self._dirty = False
                try:
                    await asyncio.to_thread(self.ledger.run_once)
                    self.runs += 1
                except InvariantViolation as e:
                    self.failures += 1
                    log.error("ledger run stopped at trade %s: %s", e.trade_id, e)
                except Exception:
                    self.failures += 1
                    log.exception("ledger run failed; cursor unchanged, retrying next cycle")
            if not self._dirty:
                self._idle.set()

    async def on_live_trade(self, trade: LeaderTrade) -> None:
        if self.ingestor is None:
            return
        try:
            added = await asyncio.to_thread(self.ingestor.ingest_live, trade)
        except Exception:
            log.exception("failed to store live trade %s", trade.tx_hash)
            return
        if added:
            self.request_run()

    async def poll_loop(self) -> None:
        while not self._stop.is_set():
            if self.ingestor is not None:
                try:
                    await asyncio.to_thread(self.ingestor.ingest_all)
                except Exception:
                    log.exception("ingest pass failed")
            self.request_run()
            try:
                publish_event(EventEnvelope(
                    correlation_id="heartbeat",
                    event=Heartbeat(ts=int(time.time() * 1000)),
                ))
            except Exception:
                pass
            if self.poll_interval_ms <= 0:
                return
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_ms / 1000.0)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self.worker()),
            asyncio.create_task(self.poll_loop()),
        ]
        if self.feed is not None:
            tasks.append(asyncio.create_task(self.feed.run_forever()))
        try:
            if self.poll_interval_ms <= 0:
                await tasks[1]
                await self.wait_idle()
                self.stop()
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
