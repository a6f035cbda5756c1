"""
Configuration loader for followbot.

What it does:
- Reads static settings from `config/config.yaml` (missing file = built-in defaults).
- Applies environment overrides (`WALLETS`, `DB_PATH`, `PAPER_*`, `LIVE_*`, ...) and
  resolves secrets (`PRIVATE_KEY`) from the environment only.
- Validates the result with Pydantic models.

Where it is used:
- `followbot.main` builds one `Settings` per process and hands the relevant
  sub-models to the store, ledger, feeds and live executor.
"""

from __future__ import annotations

import os
import pathlib
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..errors import ConfigError


class PaperConfig(BaseModel):
    """Paper-ledger sizing parameters."""
    start_equity: float = Field(100_000.0, gt=0)
    slippage_bps: float = Field(50.0, ge=0, lt=10_000)
    size_mode: Literal["LEADER_PCT", "FIXED"] = "LEADER_PCT"
    fixed_cap_per_trade_usd: float = Field(100.0, ge=0)
    fallback_leader_pct: float = Field(0.10, gt=0, le=1)

    @field_validator("size_mode", mode="before")
    @classmethod
    def upper_mode(cls, v):
        return str(v).upper() if v is not None else v


class FetchConfig(BaseModel):
    """Tunable parameters for API request pacing and backoff."""
    rate_limit_ms: int = 250
    backoff_initial_ms: int = 500
    backoff_max_ms: int = 10_000
    max_attempts: int = Field(4, ge=1)
    timeout_s: float = 10.0
    page_limit: int = Field(500, ge=1)
    max_pages: int = Field(40, ge=1)


class FeedConfig(BaseModel):
    """Push feed (real-time data socket) settings."""
    enabled: bool = True
    url: str = "wss://ws-live-data.polymarket.com"
    reconnect_initial_ms: int = 1_000
    reconnect_max_ms: int = 60_000


class LiveConfig(BaseModel):
    enabled: bool = False
    dry_run: bool = True
    clob_host: str = "https://clob.polymarket.com"
    chain_id: int = 137
    private_key: str = ""
    funder_address: str = ""

    @model_validator(mode="after")
    def key_required_for_real_orders(self):
        if self.enabled and not self.dry_run and not self.private_key:
            raise ValueError("PRIVATE_KEY is required when live trading is enabled without dry run")
        return self


class Settings(BaseModel):
    """Runtime settings assembled from YAML + environment variables."""
    wallets: List[str] = []
    db_path: str = "data/trades.db"
    poll_interval_ms: int = Field(10_000, ge=0)
    data_api_base: str = "https://data-api.polymarket.com"
    gamma_api_base: str = "https://gamma-api.polymarket.com"
    audit_log_path: str = "data/audit/sizing.jsonl"
    dashboard_port: int = 3000
    metrics_port: int = 8000
    paper: PaperConfig = PaperConfig()
    fetch: FetchConfig = FetchConfig()
    feed: FeedConfig = FeedConfig()
    live: LiveConfig = LiveConfig()

    @field_validator("wallets", mode="before")
    @classmethod
    def normalize_wallets(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        seen: List[str] = []
        for w in v:
            w = str(w).strip().lower()
            if w and w not in seen:
                seen.append(w)
        return seen

    def require_wallets(self) -> List[str]:
        if not self.wallets:
            raise ConfigError("No leader wallets configured. Set WALLETS or `wallets` in config.yaml")
        return self.wallets


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    top = {
        "WALLETS": "wallets",
        "DB_PATH": "db_path",
        "POLL_INTERVAL_MS": "poll_interval_ms",
        "DATA_API_BASE": "data_api_base",
        "GAMMA_API_BASE": "gamma_api_base",
        "AUDIT_LOG_PATH": "audit_log_path",
        "PORT": "dashboard_port",
        "PROMETHEUS_PORT": "metrics_port",
    }
    for env_name, key in top.items():
        val = os.getenv(env_name)
        if val:
            config[key] = val

    paper = dict(config.get("paper") or {})
    for env_name, key in (
        ("PAPER_START_EQUITY", "start_equity"),
        ("PAPER_SLIPPAGE_BPS", "slippage_bps"),
        ("PAPER_SIZE_MODE", "size_mode"),
        ("PAPER_FIXED_CAP_USD", "fixed_cap_per_trade_usd"),
    ):
        val = os.getenv(env_name)
        if val:
            paper[key] = val
    config["paper"] = paper

    feed = dict(config.get("feed") or {})
    rtds = _env_bool("RTDS_ENABLED")
    if rtds is not None:
        feed["enabled"] = rtds
    config["feed"] = feed

    live = dict(config.get("live") or {})
    enabled = _env_bool("LIVE_TRADING_ENABLED")
    if enabled is not None:
        live["enabled"] = enabled
    dry_run = _env_bool("LIVE_DRY_RUN")
    if dry_run is not None:
        live["dry_run"] = dry_run
    # Secrets never come from YAML
    live["private_key"] = os.getenv("PRIVATE_KEY", "")
    funder = os.getenv("FUNDER_ADDRESS")
    if funder:
        live["funder_address"] = funder
    config["live"] = live
    return config


def load_settings(path: str = "config/config.yaml") -> Settings:
    """Load YAML config, apply env overrides and return validated Settings.

    Raises ConfigError on validation failures so callers get one error type.
    """
    p = pathlib.Path(path)
    config: Dict[str, Any] = {}
    if p.exists():
        with open(p, "r") as f:
            config = yaml.safe_load(f) or {}
    config = _env_overrides(config)
    try:
        return Settings(**config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
