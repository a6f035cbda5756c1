from __future__ import annotations

import json
import os
import logging

import redis

from .schema import EventEnvelope


STREAM_EVENTS = os.getenv("EVENTS_STREAM", "followbot.events")
STREAM_DLQ = os.getenv("EVENTS_DLQ", "followbot.dlq")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

log = logging.getLogger("followbot.events")

_client = None


def _get_redis():
    global _client
    if _client is None:
        _client = redis.Redis.from_url(
            REDIS_URL, decode_responses=True, socket_connect_timeout=0.5, socket_timeout=1.0
        )
    return _client


def encode(env: EventEnvelope) -> str:
    return json.dumps({
        "schema_version": env.schema_version,
        "correlation_id": env.correlation_id,
        "sequence": env.sequence,
        "event": env.event.model_dump(),
    }, separators=(",", ":"))


def publish(env: EventEnvelope) -> None:
    """Publish a ledger event to the Redis stream and log it as one JSON line.

    Never raises: the ledger keeps committing trades when Redis is down.
    """
    line = encode(env)
    try:
        _get_redis().xadd(STREAM_EVENTS, {"json": line})
    except Exception:
        try:
            _get_redis().xadd(STREAM_DLQ, {"json": line})
        except Exception:
            pass
    try:
        log.info(line)
    except Exception:
        pass
