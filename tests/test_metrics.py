from prometheus_client import REGISTRY

from followbot.metrics import ledger as m
from followbot.metrics.core import start_server_safe


def test_safe_counter_reuses_registered_collector():
    first = m._safe_counter("followbot_test_dupe_total", "dupe", ["x"])
    second = m._safe_counter("followbot_test_dupe_total", "dupe", ["x"])
    assert second is first
    second.labels("a").inc()
    assert REGISTRY.get_sample_value("followbot_test_dupe_total", {"x": "a"}) == 1.0


def test_disabled_metrics_are_noops(monkeypatch):
    monkeypatch.setenv("DISABLE_PROMETHEUS", "1")
    c = m._safe_counter("followbot_test_disabled_total", "off", ["x"])
    c.labels("a").inc()
    m._safe_gauge("followbot_test_disabled_gauge", "off").set(3)
    assert REGISTRY.get_sample_value("followbot_test_disabled_total", {"x": "a"}) is None


def test_realized_split_by_direction():
    def val(direction):
        return REGISTRY.get_sample_value("ledger_realized_pnl_total", {"direction": direction}) or 0.0

    profit, loss = val("profit"), val("loss")
    m.record_realized(2.5)
    m.record_realized(-1.0)
    m.record_realized(0.0)
    assert val("profit") == profit + 2.5
    assert val("loss") == loss + 1.0


def test_valuation_gauges():
    m.set_valuation_gauges(equity=10.0, cash=4.0, unrealized=1.0, realized=-2.0)
    assert REGISTRY.get_sample_value("ledger_equity_usd", {"component": "realized"}) == -2.0


def test_metrics_server_disabled_port():
    assert start_server_safe(0) is None
