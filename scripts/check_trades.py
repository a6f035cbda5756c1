#!/usr/bin/env python3
"""
Report how many trades each configured leader wallet made in a time window,
straight from the data API (no database involved).

Usage:
  WALLETS=0xabc,0xdef python3 scripts/check_trades.py [--since ISO8601] [--until ISO8601]

Exit codes:
  0 = OK
  1 = No wallets configured or every wallet failed
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from followbot.config.loader import load_settings
from followbot.errors import TransientSourceError
from followbot.feeds.polymarket import DataApiClient


def _parse_ts(value: Optional[str], default: datetime) -> int:
    dt = datetime.fromisoformat(value) if value else default
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _fmt(ts: Optional[int]) -> str:
    if not ts:
        return ""
    return datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc).isoformat()


def check_wallet(client: DataApiClient, wallet: str, start_ms: int, end_ms: int) -> Dict[str, Any]:
    try:
        trades = client.fetch_trades(wallet, since_ts=start_ms)
    except (TransientSourceError, requests.RequestException) as e:
        return {"wallet": wallet, "error": str(e)}
    window = [t for t in trades if start_ms <= t.timestamp <= end_ms]
    return {
        "wallet": wallet,
        "count": len(window),
        "first": window[0].timestamp if window else None,
        "last": window[-1].timestamp if window else None,
        "sample": window[-3:],
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--since", help="window start (default: 24h ago)")
    parser.add_argument("--until", help="window end (default: now)")
    args = parser.parse_args(argv)

    settings = load_settings()
    if not settings.wallets:
        print("No wallets found in WALLETS env var.", file=sys.stderr)
        return 1
    now = datetime.now(timezone.utc)
    start_ms = _parse_ts(args.since, now - timedelta(hours=24))
    end_ms = _parse_ts(args.until, now)

    client = DataApiClient(settings.data_api_base, settings.gamma_api_base, fetch=settings.fetch)
    print(f"Checking trades for {len(settings.wallets)} wallets between {_fmt(start_ms)} and {_fmt(end_ms)}")
    results = [check_wallet(client, w, start_ms, end_ms) for w in settings.wallets]

    print("\nPer-wallet counts:")
    for r in results:
        if "error" in r:
            print(f"{r['wallet']}: ERROR {r['error']}")
        else:
            print(f"{r['wallet']}: {r['count']} trades (first: {_fmt(r['first'])}, last: {_fmt(r['last'])})")

    print("\nMost recent trades within window (up to 3 each):")
    for r in results:
        if "error" in r:
            continue
        print(f"\n{r['wallet']}: {r['count']} trade(s)")
        for t in r["sample"]:
            print(f"  {_fmt(t.timestamp)} | {t.side} {t.size} @ {t.price} | market: {t.market_slug or t.market_title or ''} | tx {t.tx_hash}")

    return 1 if results and all("error" in r for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
