"""
HTTP client for the Polymarket data and gamma APIs.

- `fetch_trades`: leader trade history (paged, newest first), parsed into LeaderTrade.
- `fetch_portfolio_value`: leader portfolio value, used as leader equity for sizing.
- `fetch_market`: market metadata for enrichment, cached in memory with a TTL.

Every request goes through the shared RetryPolicy. HTTP 429/5xx surface as
TransientSourceError so the policy retries them.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ..config.loader import FetchConfig
from ..errors import TransientSourceError
from ..ledger.model import LeaderTrade, normalize_outcome, normalize_side
from .retry import RETRYABLE_STATUS, RetryPolicy

log = logging.getLogger(__name__)


def _to_ms(ts: Any) -> int:
    v = float(ts)
    # seconds from the REST API, already ms from some socket payloads
    return int(v if v > 1e12 else v * 1000)


def parse_trade(raw: Dict[str, Any], wallet: Optional[str] = None) -> Optional[LeaderTrade]:
    """Parse one API/socket trade payload. Returns None when it cannot be used."""
    try:
        proxy = str(raw.get("proxyWallet") or wallet or "").lower()
        market = raw.get("conditionId") or raw.get("conditionIdV2") or ""
        tx_hash = raw.get("transactionHash") or ""
        price = float(raw.get("price"))
        size = float(raw.get("size"))
        ts = _to_ms(raw.get("timestamp"))
    except (TypeError, ValueError):
        return None
    if not proxy or not market or not tx_hash:
        return None
    if size <= 0 or not (0 < price <= 1):
        return None
    nested = raw.get("market") if isinstance(raw.get("market"), dict) else {}
    return LeaderTrade(
        id=0,
        leader_wallet=proxy,
        tx_hash=str(tx_hash),
        market=str(market),
        asset_id=str(raw.get("asset") or raw.get("assetId") or ""),
        outcome=normalize_outcome(raw.get("outcome")),
        side=normalize_side(raw.get("side")),
        size=size,
        price=price,
        timestamp=ts,
        market_slug=nested.get("slug") or raw.get("slug") or None,
        market_title=nested.get("question") or raw.get("title") or raw.get("question") or None,
    )


class DataApiClient:
    def __init__(
        self,
        data_api_base: str = "https://data-api.polymarket.com",
        gamma_api_base: str = "https://gamma-api.polymarket.com",
        fetch: Optional[FetchConfig] = None,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        market_ttl_s: float = 3600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.data_api_base = data_api_base.rstrip("/")
        self.gamma_api_base = gamma_api_base.rstrip("/")
        self.fetch_cfg = fetch or FetchConfig()
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": "followbot/0.1"})
        self.retry = retry or RetryPolicy.from_config(self.fetch_cfg)
        self.market_ttl_s = float(market_ttl_s)
        self._sleep = sleep
        self._clock = clock
        self._market_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}

    def _get_once(self, source: str, url: str, params: Dict[str, Any]) -> Any:
        resp = self.session.get(url, params=params, timeout=self.fetch_cfg.timeout_s)
        if resp.status_code in RETRYABLE_STATUS or resp.status_code >= 500:
            raise TransientSourceError(f"{source} returned HTTP {resp.status_code}", source=source, status=resp.status_code)
        resp.raise_for_status()
        return resp.json()

    def _get(self, source: str, url: str, params: Dict[str, Any]) -> Any:
        return self.retry.call(source, self._get_once, source, url, params)

    def fetch_trades(self, wallet: str, since_ts: Optional[int] = None) -> List[LeaderTrade]:
        """Trades for `wallet` with timestamp >= since_ts (ms), oldest first."""
        limit = self.fetch_cfg.page_limit
        out: List[LeaderTrade] = []
        for page in range(self.fetch_cfg.max_pages):
            if page and self.fetch_cfg.rate_limit_ms > 0:
                self._sleep(self.fetch_cfg.rate_limit_ms / 1000.0)
            body = self._get(
                "data_api",
                f"{self.data_api_base}/trades",
                {"user": wallet, "limit": limit, "offset": page * limit, "takerOnly": "true"},
            )
            rows = body.get("data", []) if isinstance(body, dict) else (body or [])
            reached_since = False
            for raw in rows:
                t = parse_trade(raw, wallet)
                if t is None:
                    log.debug("dropping malformed trade for %s: %s", wallet, raw)
                    continue
                if since_ts is not None and t.timestamp < since_ts:
                    reached_since = True
                    continue
                out.append(t)
            if len(rows) < limit or reached_since:
                break
        out.sort(key=lambda t: (t.timestamp, t.tx_hash))
        return out

    def fetch_portfolio_value(self, wallet: str) -> Optional[float]:
        if not wallet:
            raise ValueError("wallet is required")
        body = self._get("data_api", f"{self.data_api_base}/value", {"user": wallet})
        if isinstance(body, list):
            body = body[0] if body else {}
        if isinstance(body, dict):
            value = body.get("value")
            if value is None and isinstance(body.get("data"), dict):
                value = body["data"].get("value")
            if value is not None:
                return float(value)
        return None

    def fetch_market(self, condition_id: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        hit = self._market_cache.get(condition_id)
        if hit is not None and hit[0] > now:
            return hit[1]
        body = self._get("gamma_api", f"{self.gamma_api_base}/markets", {"condition_ids": condition_id})
        markets = body.get("markets", []) if isinstance(body, dict) else (body or [])
        meta: Optional[Dict[str, Any]] = None
        if markets:
            m = markets[0]
            meta = {
                "condition_id": condition_id,
                "slug": m.get("slug"),
                "title": m.get("title") or m.get("question"),
                "category": m.get("category"),
                "end_date": m.get("endDate"),
            }
        self._market_cache[condition_id] = (now + self.market_ttl_s, meta)
        return meta
