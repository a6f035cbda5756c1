import pytest

from followbot.config.loader import PaperConfig
from followbot.ledger import CopyLedger, LedgerStore
from followbot.ledger.model import LeaderTrade

LEADER = "0xleader"
OTHER = "0xother"


@pytest.fixture(autouse=True)
def events(monkeypatch):
    """Capture published events instead of talking to Redis."""
    published = []

    def _capture(env):
        published.append(env)

    monkeypatch.setattr("followbot.ledger.ledger.publish_event", _capture)
    monkeypatch.setattr("followbot.service.publish_event", _capture)
    return published


@pytest.fixture
def store(tmp_path):
    st = LedgerStore(str(tmp_path / "trades.db"))
    st.init()
    return st


@pytest.fixture
def paper():
    return PaperConfig(start_equity=1000.0, slippage_bps=0, size_mode="FIXED", fixed_cap_per_trade_usd=100.0)


def make_ledger(store, paper, wallets=(LEADER,), **kwargs):
    return CopyLedger(store, paper, list(wallets), **kwargs)


def trade(tx, side="BUY", size=100.0, price=0.5, ts=2_000, wallet=LEADER, market="m1", outcome="Yes", asset="a1"):
    return LeaderTrade(
        id=0,
        leader_wallet=wallet,
        tx_hash=tx,
        market=market,
        asset_id=asset,
        outcome=outcome,
        side=side,
        size=size,
        price=price,
        timestamp=ts,
    )
