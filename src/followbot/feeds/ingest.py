from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List

import requests

from ..errors import TransientSourceError
from ..ledger.model import LeaderTrade
from ..ledger.store import LedgerStore
from ..metrics.ledger import get_feed_trades_ingested_total
from .polymarket import DataApiClient

log = logging.getLogger(__name__)


class TradeIngestor:
    """Writes leader trades into the trade log (deduplicated) and enriches market metadata."""

    def __init__(self, store: LedgerStore, client: DataApiClient, wallets: Iterable[str], enrich_markets: bool = True):
        self.store = store
        self.client = client
        self.wallets = [w.lower() for w in wallets]
        self.enrich_markets = enrich_markets
        self._ingested = get_feed_trades_ingested_total()

    def _enrich(self, trades: List[LeaderTrade]) -> None:
        if not self.enrich_markets:
            return
        for condition_id in sorted({t.market for t in trades}):
            if self.store.has_market(condition_id):
                continue
            try:
                meta = self.client.fetch_market(condition_id)
            except (TransientSourceError, requests.RequestException) as e:
                log.warning("market lookup failed for %s: %s", condition_id, e)
                continue
            if meta:
                self.store.upsert_market(meta, int(time.time() * 1000))

    def ingest_wallet(self, wallet: str) -> int:
        # Pushed trades can run ahead of a gap, so only polled ones set the cut-off
        latest = self.store.poll_watermark(wallet)
        trades = self.client.fetch_trades(wallet, since_ts=latest or None)
        added = self.store.insert_trades(trades)
        if added:
            self._ingested.labels("poll").inc(added)
        if trades:
            self.store.set_poll_watermark(wallet, max(t.timestamp for t in trades), int(time.time() * 1000))
        self._enrich(trades)
        log.info("synced %d trades for %s (%d new, since %s)", len(trades), wallet, added, latest or "beginning")
        return added

    def ingest_all(self) -> Dict[str, int]:
        """One pass over every wallet; one wallet failing does not stop the others."""
        out: Dict[str, int] = {}
        for wallet in self.wallets:
            try:
                out[wallet] = self.ingest_wallet(wallet)
            except (TransientSourceError, requests.RequestException) as e:
                log.warning("ingest failed for %s: %s", wallet, e)
                out[wallet] = 0
        return out

    def ingest_live(self, trade: LeaderTrade) -> bool:
        """Store one pushed trade; True when it was new."""
        if trade.leader_wallet.lower() not in self.wallets:
            return False
        added = self.store.insert_trades([trade])
        if added:
            self._ingested.labels("live").inc(added)
            self._enrich([trade])
        return bool(added)
