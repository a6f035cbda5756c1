"""
Generate a simple HTML report of the follower portfolio.

Usage (venv):
  set -a; source .env; set +a
  PYTHONPATH=src python -m followbot.reports.generate
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from followbot.config.loader import load_settings
from followbot.ledger import CopyLedger, LedgerStore
from followbot.ledger.valuation import mark_for
from followbot.reports.charts import save_equity_png
from followbot.reports.export import export_parquet


def _template_env(template_dir: str) -> Environment:
    return Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=select_autoescape(["html", "xml", "html.j2"]),
    )


def render_report(ledger: CopyLedger, out_dir: str, interval_s: int = 300, limit: int = 288) -> str:
    """Write `index.html` (plus chart and parquet exports) under `out_dir`; returns its path."""
    img_dir = os.path.join(out_dir, "images")
    os.makedirs(img_dir, exist_ok=True)

    store = ledger.store
    snaps = ledger.snapshots_bucketed(interval_s, limit)
    chart: Optional[str] = None
    if snaps:
        abs_path = save_equity_png(snaps, os.path.join(img_dir, "equity.png"))
        chart = os.path.relpath(abs_path, start=out_dir)

    marks = store.latest_mark_prices()
    titles = store.market_titles()
    rows: List[Dict[str, Any]] = []
    for pos in store.positions():
        mark = mark_for(pos, marks)
        rows.append({
            "leader": pos.key.leader_wallet,
            "market": titles.get(pos.key.market) or pos.key.market,
            "outcome": pos.key.outcome or "-",
            "size": pos.size,
            "avg_price": pos.avg_price,
            "mark": mark,
            "unrealized": pos.size * (mark - pos.avg_price),
        })

    exports = export_parquet(store, os.path.join(out_dir, "data"))

    template_dir = os.path.join(os.path.dirname(__file__), "templates")
    env = _template_env(template_dir)
    tpl = env.get_template("report.html.j2")
    html = tpl.render(
        generated_at=datetime.now(timezone.utc).isoformat(),
        valuation=ledger.valuation(),
        state=ledger.state(),
        chart=chart,
        positions=rows,
        fills=ledger.fills(25),
        exports={k: os.path.relpath(v, start=out_dir) for k, v in exports.items()},
    )

    out_html = os.path.join(out_dir, "index.html")
    with open(out_html, "w", encoding="utf-8") as f:
        f.write(html)
    return out_html


def main() -> None:
    settings = load_settings()
    store = LedgerStore(settings.db_path)
    store.init()
    ledger = CopyLedger(store, settings.paper, settings.wallets)
    out_dir = os.environ.get("REPORT_DIR", "reports")
    out_html = render_report(ledger, out_dir)
    print(f"Report written to: {out_html}")


if __name__ == "__main__":
    main()
