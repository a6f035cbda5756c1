import pytest

from followbot.config.loader import PaperConfig
from followbot.ledger.sizing import fill_price, size_trade

from conftest import trade


def _cfg(**kw):
    base = {"start_equity": 1000.0, "slippage_bps": 0, "size_mode": "LEADER_PCT", "fallback_leader_pct": 0.10}
    base.update(kw)
    return PaperConfig(**base)


def test_slippage_moves_price_against_follower():
    assert fill_price("BUY", 0.5, 50) == pytest.approx(0.5025)
    assert fill_price("SELL", 0.5, 50) == pytest.approx(0.4975)


def test_allocation_cap_limits_buy():
    # allocation 1000, exposure 900, leader trade is 50% of leader equity -> target 500
    t = trade("t1", side="BUY", size=1000, price=0.5)
    d = size_trade(t, follower_equity=1000, exposure_notional=900, cash=10_000, num_leaders=1,
                   leader_equity=1000, config=_cfg())
    assert not d.skipped
    assert d.target_notional == pytest.approx(500)
    assert d.desired_notional == pytest.approx(100)
    assert d.copy_size == pytest.approx(200)
    assert d.leader_fraction == pytest.approx(0.5)


def test_allocation_split_across_leaders():
    t = trade("t1", side="BUY", size=100, price=0.5)
    d = size_trade(t, follower_equity=1000, exposure_notional=0, cash=1000, num_leaders=4,
                   leader_equity=100, config=_cfg())
    # fraction 0.5 of a 250 allocation
    assert d.desired_notional == pytest.approx(125)


def test_fallback_fraction_without_leader_equity():
    t = trade("t1", side="BUY", size=10, price=0.5)
    for leader_equity in (None, 0.0, -5.0):
        d = size_trade(t, 1000, 0, 1000, 1, leader_equity, _cfg())
        assert d.leader_fraction == pytest.approx(0.10)
        assert d.desired_notional == pytest.approx(100)


def test_fixed_mode_caps_at_fixed_amount():
    cfg = _cfg(size_mode="fixed", fixed_cap_per_trade_usd=25)
    big = size_trade(trade("t1", size=1000, price=0.5), 1000, 0, 1000, 1, None, cfg)
    small = size_trade(trade("t2", size=10, price=0.5), 1000, 0, 1000, 1, None, cfg)
    assert big.desired_notional == pytest.approx(25)
    assert small.desired_notional == pytest.approx(5)
    assert big.leader_fraction is None


def test_buy_clamped_to_cash():
    d = size_trade(trade("t1", size=1000, price=0.5), 1000, 0, 40, 1, 1000, _cfg())
    assert d.desired_notional == pytest.approx(40)
    assert d.copy_size == pytest.approx(80)


def test_buy_skip_reasons():
    t = trade("t1", size=100, price=0.5)
    assert size_trade(t, 1000, 1000, 500, 1, 1000, _cfg()).skip_reason == "allocation_full"
    assert size_trade(t, 1000, 0, 0, 1, 1000, _cfg()).skip_reason == "no_cash"
    fixed_zero = _cfg(size_mode="FIXED", fixed_cap_per_trade_usd=0)
    d = size_trade(t, 1000, 0, 500, 1, None, fixed_zero)
    assert d.skip_reason == "zero_target"
    assert d.copy_size == 0.0


def test_sell_without_position_is_skipped():
    d = size_trade(trade("t1", side="SELL"), 1000, 0, 1000, 1, 1000, _cfg())
    assert d.skipped
    assert d.skip_reason == "no_exposure"


def test_sell_never_exceeds_exposure():
    # position 10 @ 0.5 -> exposure 5; leader sells far more
    t = trade("t1", side="SELL", size=1000, price=0.7)
    d = size_trade(t, 1000, 5.0, 1000, 1, 1000, _cfg(), held_size=10)
    assert d.desired_notional == pytest.approx(5.0)
    assert d.copy_size == pytest.approx(5.0 / 0.7)
    assert d.copy_size <= 10


def test_sell_copy_size_capped_at_held_size():
    # price below entry: exposure / price would exceed the shares held
    t = trade("t1", side="SELL", size=1000, price=0.4)
    d = size_trade(t, 1000, 5.0, 1000, 1, 1000, _cfg(), held_size=10)
    assert d.copy_size == 10
    assert d.desired_notional == pytest.approx(4.0)
