import json
import socket

import pytest

from followbot.events import bus
from followbot.events.schema import EventEnvelope, FillRecorded, Heartbeat, TradeSkipped


def _redis_up(host="localhost", port=6379):
    try:
        with socket.create_connection((host, port), timeout=0.5):
            return True
    except Exception:
        return False


def _fill_env():
    evt = FillRecorded(ts=1, market="0xcond", leader_wallet="0xleader", side="BUY", trade_id=7,
                       outcome="Yes", size=10.0, price=0.5, signed_notional=5.0, cash_after=995.0)
    return EventEnvelope(correlation_id="0xleader:7", sequence=7, event=evt)


def test_envelope_encodes_subclass_fields():
    js = json.loads(bus.encode(_fill_env()))
    assert js["schema_version"] == "v1"
    assert js["sequence"] == 7
    assert js["event"]["event_type"] == "fill_recorded"
    assert js["event"]["cash_after"] == 995.0


def test_event_models():
    skip = TradeSkipped(ts=2, market="m", trade_id=3, reason="no_cash")
    assert skip.event_type == "trade_skipped"
    assert Heartbeat(ts=3).service == "ledger"
    assert "trade_skipped" in EventEnvelope(correlation_id="c", event=skip).model_dump_json()


class FakeRedis:
    def __init__(self, fail_streams=()):
        self.fail_streams = set(fail_streams)
        self.added = []

    def xadd(self, stream, fields):
        if stream in self.fail_streams:
            raise ConnectionError("redis down")
        self.added.append((stream, fields))


def test_publish_writes_stream(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(bus, "_get_redis", lambda: fake)
    bus.publish(_fill_env())
    [(stream, fields)] = fake.added
    assert stream == bus.STREAM_EVENTS
    assert json.loads(fields["json"])["correlation_id"] == "0xleader:7"


def test_publish_falls_back_to_dlq_and_never_raises(monkeypatch):
    fake = FakeRedis(fail_streams={bus.STREAM_EVENTS})
    monkeypatch.setattr(bus, "_get_redis", lambda: fake)
    bus.publish(_fill_env())
    assert [s for s, _ in fake.added] == [bus.STREAM_DLQ]

    dead = FakeRedis(fail_streams={bus.STREAM_EVENTS, bus.STREAM_DLQ})
    monkeypatch.setattr(bus, "_get_redis", lambda: dead)
    bus.publish(_fill_env())
    assert dead.added == []


@pytest.mark.skipif(not _redis_up(), reason="redis not running on localhost:6379")
def test_bus_publish_roundtrip():
    bus.publish(EventEnvelope(correlation_id="heartbeat", event=Heartbeat(ts=1)))
    entries = bus._get_redis().xrevrange(bus.STREAM_EVENTS, count=1)
    assert entries
