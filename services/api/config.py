# services/api/config.py
from __future__ import annotations
import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_PATH = os.environ.get("CONFIG_PATH", "config/app.yaml")


class RateLimitConfig(BaseModel):
    max_requests: int = Field(default=100, gt=0)
    window_ms: int = Field(default=60_000, gt=0)


class FlowSection(BaseModel):
    source_url: Optional[str] = None
    period_s: float = Field(default=300.0, gt=0)
    retention_cycles: Optional[int] = Field(default=12, gt=0)
    alert_confidence: float = 0.7
    thresholds: Dict[str, Any] = Field(default_factory=dict)


class StreamConfig(BaseModel):
    feed_url: Optional[str] = None
    max_attempts: int = Field(default=5, gt=0)
    pong_timeout_s: float = 10.0
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000


class DashboardConfig(BaseModel):
    top_opportunities: int = 20
    recent_trades: int = 12
    max_recent_opportunities: int = 200


class LedgerConfig(BaseModel):
    default_max_risk_pct: float = 5.0
    default_fee_bps: float = 30.0


class AppConfig(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    flow: FlowSection = Field(default_factory=FlowSection)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)


def deep_merge(a, b):
    if not isinstance(a, dict): a = {}
    if not isinstance(b, dict): b = {}
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _env_overrides() -> Dict[str, Any]:
    ov: Dict[str, Any] = {}
    if os.environ.get("DATABASE_URL"):
        ov["database_url"] = os.environ["DATABASE_URL"]
    if os.environ.get("REDIS_URL"):
        ov["redis_url"] = os.environ["REDIS_URL"]
    if os.environ.get("LOG_LEVEL"):
        ov["log_level"] = os.environ["LOG_LEVEL"]
    if os.environ.get("FLOW_SOURCE_URL"):
        ov["flow"] = {"source_url": os.environ["FLOW_SOURCE_URL"]}
    if os.environ.get("FEED_URL"):
        ov["stream"] = {"feed_url": os.environ["FEED_URL"]}
    return ov


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> AppConfig:
    """app.yaml (if present) < environment < explicit overrides."""
    path = path or CONFIG_PATH
    base: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r") as f:
            base = yaml.safe_load(f) or {}
    merged = deep_merge(deep_merge(base, _env_overrides()), overrides or {})
    return AppConfig(**merged)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
