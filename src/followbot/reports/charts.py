"""
Chart utilities for the follower portfolio.

Renders the equity and cash curves from portfolio snapshots and saves a PNG
(parent directories are created as needed).
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Sequence

import matplotlib

# Use a non-interactive backend for headless environments
matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import matplotlib.dates as mdates  # noqa: E402

from ..ledger.model import PortfolioSnapshot  # noqa: E402


def save_equity_png(snapshots: Sequence[PortfolioSnapshot], out_path: str, title: str = "Follower equity") -> str:
    """Render equity/cash over time and save to `out_path` (PNG).

    Returns the absolute path to the saved file.
    """
    if not snapshots:
        raise ValueError("No snapshots provided for charting")

    parent = os.path.dirname(out_path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    times = [datetime.fromtimestamp(s.timestamp / 1000.0, tz=timezone.utc) for s in snapshots]
    equity = [s.equity for s in snapshots]
    cash = [s.cash for s in snapshots]

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.set_title(title)
    ax.plot(times, equity, color="green", linewidth=1.2, label="equity")
    ax.plot(times, cash, color="grey", linewidth=0.8, linestyle="--", label="cash")
    ax.legend(loc="best")

    ax.xaxis.set_major_formatter(mdates.DateFormatter("%H:%M\n%m-%d"))
    ax.grid(True, linestyle=":", alpha=0.5)

    fig.tight_layout()
    fig.savefig(out_path, dpi=120)
    plt.close(fig)
    return os.path.abspath(out_path)
