import pytest

from followbot.ledger.model import FollowerPosition, LedgerState, PositionKey
from followbot.ledger.valuation import cash_delta, mark_for, value


def _pos(market, outcome, size, avg):
    return FollowerPosition(key=PositionKey.of(market, outcome, "0xleader"), size=size, avg_price=avg, updated_at=1)


def test_cash_delta_sign():
    assert cash_delta("BUY", 10, 0.4) == pytest.approx(-4.0)
    assert cash_delta("SELL", 10, 0.4) == pytest.approx(4.0)


def test_mark_falls_back_to_entry_price():
    pos = _pos("m1", "Yes", 10, 0.4)
    assert mark_for(pos, {}) == pytest.approx(0.4)
    assert mark_for(pos, {("m1", "No"): 0.9}) == pytest.approx(0.4)
    assert mark_for(pos, {("m1", "Yes"): 0.7}) == pytest.approx(0.7)


def test_equity_is_cash_plus_marked_positions():
    state = LedgerState(cash=500.0, realized=12.0, last_trade_id=3, epoch_start_ts=0)
    positions = [_pos("m1", "Yes", 100, 0.4), _pos("m2", "No", 50, 0.2)]
    v = value(state, positions, {("m1", "Yes"): 0.5})
    assert v.position_value == pytest.approx(100 * 0.5 + 50 * 0.2)
    assert v.equity == pytest.approx(560.0)
    assert v.unrealized == pytest.approx(10.0)
    assert v.realized == pytest.approx(12.0)
    assert v.cash == pytest.approx(500.0)


def test_empty_portfolio_is_all_cash():
    v = value(LedgerState(cash=1000.0, realized=0.0, last_trade_id=0, epoch_start_ts=0), [], {})
    assert v.equity == pytest.approx(1000.0)
    assert v.unrealized == 0.0
