from __future__ import annotations

import os
import json
import time
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ResponseError
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from followbot.config.loader import load_settings
from followbot.ledger import CopyLedger, LedgerStore
from followbot.ledger.valuation import mark_for

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
STREAM = os.getenv("EVENTS_STREAM", "followbot.events")
GROUP = os.getenv("SSE_GROUP", "dashboard")
CONFIG_PATH = os.getenv("FOLLOWBOT_CONFIG", "config/config.yaml")

app = FastAPI(title="followbot dashboard")

_ledger: Optional[CopyLedger] = None


def get_ledger() -> CopyLedger:
    """Read-only ledger over the daemon's database (WAL readers never block the writer)."""
    global _ledger
    if _ledger is None:
        settings = load_settings(CONFIG_PATH)
        store = LedgerStore(settings.db_path)
        store.init(migrate=False)
        _ledger = CopyLedger(store, settings.paper, settings.wallets)
    return _ledger


@app.get("/api/portfolio")
def portfolio(ledger: CopyLedger = Depends(get_ledger)):
    v = ledger.valuation()
    return {
        "equity": v.equity,
        "cash": v.cash,
        "unrealized": v.unrealized,
        "realized": v.realized,
        "position_value": v.position_value,
        "timestamp": int(time.time() * 1000),
    }


@app.get("/api/positions")
def positions(ledger: CopyLedger = Depends(get_ledger)):
    store = ledger.store
    marks = store.latest_mark_prices()
    titles = store.market_titles()
    groups: Dict[Tuple[str, str], Dict] = {}
    for pos in store.positions():
        g = groups.setdefault((pos.key.leader_wallet, pos.key.market), {
            "leader_wallet": pos.key.leader_wallet,
            "condition_id": pos.key.market,
            "title": titles.get(pos.key.market),
            "size": 0.0,
            "cost": 0.0,
            "value": 0.0,
            "unrealized": 0.0,
        })
        mark = mark_for(pos, marks)
        g["size"] += pos.size
        g["cost"] += pos.size * pos.avg_price
        g["value"] += pos.size * mark
        g["unrealized"] += pos.size * (mark - pos.avg_price)
    out = []
    for g in groups.values():
        size = g.pop("size")
        cost = g.pop("cost")
        value = g.pop("value")
        out.append(dict(
            g,
            size=size,
            avg_price=cost / size if size else 0.0,
            mark_price=value / size if size else None,
            notional=value,
        ))
    out.sort(key=lambda r: r["notional"], reverse=True)
    return out


@app.get("/api/fills")
def fills(limit: int = Query(50, ge=1, le=1000), ledger: CopyLedger = Depends(get_ledger)):
    return ledger.fills(limit)


@app.get("/api/closed")
def closed(limit: int = Query(50, ge=1, le=1000), ledger: CopyLedger = Depends(get_ledger)):
    return ledger.closed_fills(limit)


@app.get("/api/equity")
def equity(
    intervalSec: int = Query(300, ge=1),
    limit: int = Query(288, ge=1, le=10_000),
    ledger: CopyLedger = Depends(get_ledger),
):
    return [
        {"timestamp": s.timestamp, "equity": s.equity, "cash": s.cash, "unrealized": s.unrealized, "realized": s.realized}
        for s in ledger.snapshots_bucketed(intervalSec, limit)
    ]


@app.get("/api/state")
def state(ledger: CopyLedger = Depends(get_ledger)):
    st = ledger.state()
    if st is None:
        raise HTTPException(status_code=404, detail="ledger not initialized")
    return {
        "cash": st.cash,
        "realized": st.realized,
        "last_trade_id": st.last_trade_id,
        "epoch_start_ts": st.epoch_start_ts,
        "max_trade_id": ledger.store.max_trade_id(),
    }


# ---- SSE ----

async def ensure_group(r):
    try:
        await r.xgroup_create(name=STREAM, groupname=GROUP, id="$", mkstream=True)
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


def _match_filters(js: str, types: Optional[List[str]], wallets: Optional[List[str]]) -> bool:
    try:
        data = json.loads(js)
    except ValueError:
        return False
    ev = data.get("event", {})
    t = ev.get("event_type")
    w = (ev.get("leader_wallet") or "").lower()
    ok_t = True if not types else t in types
    ok_w = True if not wallets else w in wallets
    return ok_t and ok_w


async def event_stream(types: Optional[List[str]], wallets: Optional[List[str]]) -> AsyncGenerator[bytes, None]:
    r = aioredis.from_url(REDIS_URL, decode_responses=True)
    await ensure_group(r)
    consumer = os.getenv("SSE_CONSUMER", os.uname().nodename)
    try:
        while True:
            resp = await r.xreadgroup(GROUP, consumer, {STREAM: ">"}, count=100, block=15000)
            if resp:
                for _stream, entries in resp:
                    for msg_id, fields in entries:
                        js = fields.get("json", "")
                        if _match_filters(js, types, wallets):
                            yield f"event: event\ndata: {js}\n\n".encode()
                        await r.xack(STREAM, GROUP, msg_id)
            else:
                yield b": keep-alive\n\n"
    finally:
        await r.aclose()


@app.get("/events")
async def sse(request: Request, types: Optional[str] = None, wallets: Optional[str] = None):
    ty = types.split(",") if types else None
    wa = [w.strip().lower() for w in wallets.split(",")] if wallets else None
    return StreamingResponse(event_stream(ty, wa), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=load_settings(CONFIG_PATH).dashboard_port)
