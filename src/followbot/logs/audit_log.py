from __future__ import annotations

import json
import logging
import os
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..metrics.ledger import _safe_counter

if TYPE_CHECKING:
    from ..ledger.model import LeaderTrade, SizingDecision

_appends = None
_errors = None


def _get_append_counters():
    global _appends, _errors
    if _appends is None:
        _appends = _safe_counter("audit_log_appends_total", "Sizing audit records appended", ["outcome"])
        _errors = _safe_counter("audit_log_errors_total", "Sizing audit log errors", ["reason"])
    return _appends, _errors


REQUIRED_KEYS = {
    "ts", "trade_id", "leader_wallet", "market", "outcome", "side",
    "leader_size", "leader_price", "target_notional", "desired_notional",
    "copy_size", "fill_price", "decision",
}


def validate_record(rec: Dict[str, Any]) -> List[str]:
    return [k for k in REQUIRED_KEYS if k not in rec]


def append_jsonl(path: str, rec: Dict[str, Any]) -> bool:
    """Append one record as a JSON line. Returns False when it was not written."""
    app, err = _get_append_counters()
    missing = validate_record(rec)
    if missing:
        err.labels("missing_fields").inc()
        return False
    parent = os.path.dirname(path)
    try:
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
        app.labels(str(rec.get("decision"))).inc()
        return True
    except OSError:
        err.labels("io_error").inc()
        return False


def sizing_record(
    trade: LeaderTrade,
    decision: Optional[SizingDecision],
    outcome: str,
    ts: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the audit record for one sizing decision (`outcome`: filled|skipped)."""
    rec: Dict[str, Any] = {
        "ts": int(ts if ts is not None else int(time.time() * 1000)),
        "trade_id": trade.id,
        "leader_wallet": trade.leader_wallet,
        "market": trade.market,
        "outcome": trade.outcome,
        "side": trade.side,
        "leader_size": trade.size,
        "leader_price": trade.price,
        "target_notional": decision.target_notional if decision else 0.0,
        "desired_notional": decision.desired_notional if decision else 0.0,
        "copy_size": decision.copy_size if decision else 0.0,
        "fill_price": decision.fill_price if decision else None,
        "leader_fraction": decision.leader_fraction if decision else None,
        "skip_reason": decision.skip_reason if decision else None,
        "decision": outcome,
    }
    if extra:
        rec.update(extra)
    return rec


def log_ledger_event(event_type: str, payload: Dict[str, Any], severity: str = "INFO") -> None:
    """Emit a structured single-line JSON log for ledger decisions."""
    try:
        logger = logging.getLogger("followbot.ledger")
        line = {"event": str(event_type), "severity": severity, "component": "ledger", "schema_version": "v1"}
        line.update(payload)
        msg = json.dumps(line, separators=(",", ":"), ensure_ascii=False, default=str)
        if severity == "ERROR":
            logger.error(msg)
        elif severity == "WARNING":
            logger.warning(msg)
        else:
            logger.info(msg)
    except Exception:
        pass
