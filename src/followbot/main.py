"""
Main entrypoint for followbot.

What it does:
- Loads runtime settings from `config/config.yaml` and environment variables.
- Wires the SQLite store, data API client, ingestor, copy ledger and optional
  live executor / push feed together.
- Dispatches one of the commands below.

Commands (`python -m followbot.main <command>`):
- `daemon`: metrics server + LedgerService (poll loop, optional live feed).
- `run-once`: one ingest pass, then one ledger run.
- `ingest`: one ingest pass (trades + market metadata).
- `reset`: start a fresh ledger epoch at the current time.
- `allocation`: print follower equity and per-leader allocation.
- `migrate`: normalize legacy NULL outcomes and key/value state rows.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from followbot.config.loader import Settings, load_settings
from followbot.errors import FollowbotError
from followbot.exec.live import LiveExecutor
from followbot.feeds.ingest import TradeIngestor
from followbot.feeds.polymarket import DataApiClient
from followbot.feeds.rtds import LiveTradeFeed
from followbot.ledger import CopyLedger, LedgerStore
from followbot.metrics.core import start_server_safe
from followbot.service import LedgerService


def build(settings: Settings, with_executor: bool = True):
    store = LedgerStore(settings.db_path)
    store.init()
    client = DataApiClient(settings.data_api_base, settings.gamma_api_base, fetch=settings.fetch)
    executor = LiveExecutor(settings.live) if with_executor else None
    ledger = CopyLedger(
        store,
        settings.paper,
        settings.wallets,
        leader_equity=client.fetch_portfolio_value,
        executor=executor,
        audit_log_path=settings.audit_log_path,
    )
    ingestor = TradeIngestor(store, client, settings.wallets)
    return store, client, ledger, ingestor


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def cmd_daemon(settings: Settings) -> int:
    settings.require_wallets()
    start_server_safe(settings.metrics_port)
    _, _, ledger, ingestor = build(settings)
    service = LedgerService(ledger, ingestor=ingestor, poll_interval_ms=settings.poll_interval_ms)
    if settings.feed.enabled:
        service.feed = LiveTradeFeed(
            settings.feed.url,
            settings.wallets,
            on_trade=service.on_live_trade,
            reconnect_initial_ms=settings.feed.reconnect_initial_ms,
            reconnect_max_ms=settings.feed.reconnect_max_ms,
        )
    else:
        logging.info("RTDS disabled (RTDS_ENABLED=false)")
    logging.info(
        "followbot daemon: %d wallets, poll every %dms, mode=%s, live=%s",
        len(settings.wallets), settings.poll_interval_ms, settings.paper.size_mode, settings.live.enabled,
    )
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logging.info("shutting down")
    return 0


def cmd_run_once(settings: Settings) -> int:
    settings.require_wallets()
    _, _, ledger, ingestor = build(settings)
    counts = ingestor.ingest_all()
    report = ledger.run_once()
    logging.info("ingested %d new trades", sum(counts.values()))
    if report.processed == 0:
        logging.info("No new leader trades to simulate.")
    _print({
        "processed": report.processed,
        "filled": report.filled,
        "skipped": report.skipped,
        "last_trade_id": report.last_trade_id,
        "equity": report.snapshot.equity if report.snapshot else None,
    })
    return 0


def cmd_ingest(settings: Settings) -> int:
    settings.require_wallets()
    _, _, _, ingestor = build(settings, with_executor=False)
    _print(ingestor.ingest_all())
    return 0


def cmd_reset(settings: Settings) -> int:
    _, _, ledger, _ = build(settings, with_executor=False)
    state = ledger.reset()
    _print({
        "start_equity": state.cash,
        "last_trade_id": state.last_trade_id,
        "epoch_start_ts": state.epoch_start_ts,
    })
    return 0


def cmd_allocation(settings: Settings) -> int:
    settings.require_wallets()
    _, _, ledger, _ = build(settings, with_executor=False)
    _print(ledger.allocation())
    return 0


def cmd_migrate(settings: Settings) -> int:
    store = LedgerStore(settings.db_path)
    _print(store.init())
    return 0


COMMANDS = {
    "daemon": cmd_daemon,
    "run-once": cmd_run_once,
    "ingest": cmd_ingest,
    "reset": cmd_reset,
    "allocation": cmd_allocation,
    "migrate": cmd_migrate,
}


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser(prog="followbot", description="Copy-trade leader wallets into a paper ledger")
    parser.add_argument("command", choices=sorted(COMMANDS))
    parser.add_argument("--config", default="config/config.yaml", help="path to config.yaml")
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args.config)
        return COMMANDS[args.command](settings)
    except FollowbotError as e:
        logging.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
