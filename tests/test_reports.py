import os

import pandas as pd
import pytest

from followbot.ledger.model import PortfolioSnapshot
from followbot.reports.charts import save_equity_png
from followbot.reports.export import export_parquet
from followbot.reports.generate import render_report

from conftest import make_ledger, trade


def _seed(store, paper):
    led = make_ledger(store, paper)
    led.ensure_initialized(now=1_000)
    store.upsert_market({"condition_id": "m1", "slug": "rain", "title": "Will <it> rain?"}, 1)
    store.insert_trades([trade("t1", ts=2_000), trade("t2", side="SELL", size=40, price=0.6, ts=3_000)])
    led.run_once(now=600_000)
    return led


def test_save_equity_png(tmp_path):
    snaps = [PortfolioSnapshot(timestamp=1_700_000_000_000 + i * 60_000, equity=1000 + i, cash=900, unrealized=i, realized=0)
             for i in range(5)]
    out = save_equity_png(snaps, str(tmp_path / "charts" / "equity.png"))
    assert os.path.isabs(out)
    with open(out, "rb") as f:
        assert f.read(8) == b"\x89PNG\r\n\x1a\n"
    with pytest.raises(ValueError):
        save_equity_png([], str(tmp_path / "empty.png"))


def test_export_parquet(store, paper, tmp_path):
    _seed(store, paper)
    paths = export_parquet(store, str(tmp_path / "export"))
    fills = pd.read_parquet(paths["fills"])
    assert list(fills["side"]) == ["SELL", "BUY"]
    assert fills["title"].iloc[0] == "Will <it> rain?"
    snaps = pd.read_parquet(paths["snapshots"])
    assert len(snaps) == 2
    positions = pd.read_parquet(paths["positions"])
    assert positions["size"].iloc[0] == pytest.approx(100 - 24 / 0.6)


def test_export_parquet_empty_ledger(store, tmp_path):
    paths = export_parquet(store, str(tmp_path / "export"))
    assert pd.read_parquet(paths["fills"]).empty
    assert "equity" in pd.read_parquet(paths["snapshots"]).columns


def test_render_report(store, paper, tmp_path):
    led = _seed(store, paper)
    out = render_report(led, str(tmp_path / "report"))
    html = open(out, encoding="utf-8").read()
    assert "Follower portfolio" in html
    assert "Will &lt;it&gt; rain?" in html
    assert 'src="images/equity.png"' in html
    assert os.path.exists(tmp_path / "report" / "data" / "fills.parquet")
