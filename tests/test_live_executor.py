import pytest

from followbot.config.loader import LiveConfig
from followbot.exec.live import LiveExecutor
from followbot.ledger.model import Fill

FILL = Fill(
    source_trade_id=7,
    leader_wallet="0xleader",
    market="0xcond",
    outcome="Yes",
    side="BUY",
    price=0.503,
    size=19.876,
    signed_notional=10.0,
    timestamp=1,
)


def _never(cfg):
    raise AssertionError("client must not be created")


def test_disabled_never_touches_the_venue():
    ex = LiveExecutor(LiveConfig(enabled=False), client_factory=_never)
    res = ex.submit(FILL, token_id="tok")
    assert res.status == "DISABLED"
    assert res.error == "LIVE_TRADING_DISABLED"


def test_dry_run():
    ex = LiveExecutor(LiveConfig(enabled=True, dry_run=True), client_factory=_never)
    res = ex.submit(FILL, token_id="tok")
    assert res.status == "DRY_RUN"
    assert res.reference is None


def test_missing_token_id_fails_without_raising():
    ex = LiveExecutor(LiveConfig(enabled=True, dry_run=False, private_key="0xkey"), client_factory=_never)
    res = ex.submit(FILL, token_id="")
    assert res.status == "FAILED"
    assert "token id" in res.error


def test_real_key_required_outside_dry_run():
    with pytest.raises(ValueError):
        LiveConfig(enabled=True, dry_run=False, private_key="")


class FakeClob:
    def __init__(self, response):
        self.response = response
        self.orders = []

    def create_order(self, args):
        self.orders.append(args)
        return {"signed": args}

    def post_order(self, order, order_type):
        return self.response


def test_posts_gtc_limit_order():
    pytest.importorskip("py_clob_client")
    clob = FakeClob({"success": True, "orderID": "abc123"})
    ex = LiveExecutor(LiveConfig(enabled=True, dry_run=False, private_key="0xkey"), client_factory=lambda cfg: clob)
    res = ex.submit(FILL, token_id="tok")
    assert res.status == "POSTED"
    assert res.reference == "abc123"
    [args] = clob.orders
    assert args.token_id == "tok"
    assert args.price == pytest.approx(0.5)
    assert args.size == pytest.approx(19.88)


def test_rejected_order_is_failed():
    pytest.importorskip("py_clob_client")
    clob = FakeClob({"success": False, "errorMsg": "not enough balance"})
    ex = LiveExecutor(LiveConfig(enabled=True, dry_run=False, private_key="0xkey"), client_factory=lambda cfg: clob)
    res = ex.submit(FILL, token_id="tok")
    assert res.status == "FAILED"
    assert "not enough balance" in res.error
