from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field


class Secrets(BaseModel):
    dune_api_key: Optional[str] = None
    cmc_api_key: Optional[str] = None
    cron_secret: Optional[str] = None
    debug_password: Optional[str] = None
    dune_webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Secrets":
        return cls(
            dune_api_key=os.environ.get("DUNE_API_KEY") or None,
            cmc_api_key=os.environ.get("CMC_PRO_API_KEY") or None,
            cron_secret=os.environ.get("CRON_SECRET") or None,
            debug_password=os.environ.get("DEBUG_PASSWORD") or None,
            dune_webhook_secret=os.environ.get("DUNE_WEBHOOK_SECRET") or None,
        )


class DuneConfig(BaseModel):
    base_url: str = "https://api.dune.com/api/v1"
    request_timeout_s: int = 30
    performance: str = "medium"
    default_query_id: int = 5184581


class PollerConfig(BaseModel):
    batch_size: int = 10
    recency_hours: int = 24
    stale_hours: int = 6


class ExtendedPollConfig(BaseModel):
    delays_s: List[int] = [10, 30, 60, 120, 180, 300]
    max_attempts: int = 10


class RateLimitConfig(BaseModel):
    max_attempts: int = 3
    default_wait_s: int = 60
    max_wait_s: int = 180


class GeckoConfig(BaseModel):
    base_url: str = "https://api.geckoterminal.com/api/v2"
    network: str = "hyperevm"
    max_pages: int = 3
    inter_page_delay_s: float = 15.0
    min_volume_usd: float = 1000
    min_liquidity_usd: float = 5000
    inactive_days: int = 7
    request_timeout_s: int = 20


class LlamaConfig(BaseModel):
    base_url: str = "https://api.llama.fi"
    protocol_slugs: List[str] = [
        "hypurrfi",
        "hyperyield",
        "looped-hype",
        "kittenswap-finance",
        "growihf",
        "sentiment",
        "hyperpie",
        "hyperlend",
        "keiko-finance",
        "felix",
        "valantis",
        "laminar",
        "upshift",
        "morpho",
        "hyperswap",
    ]
    chain_keys: List[str] = ["Hyperliquid L1", "Hyperliquid"]
    fees_protocol: str = "Hyperliquid"
    revenue_series: str = "Hyperliquid Spot Orderbook"
    max_workers: int = 8
    request_timeout_s: int = 30


class CmcConfig(BaseModel):
    base_url: str = "https://pro-api.coinmarketcap.com/v1"
    symbol: str = "HYPE"
    request_timeout_s: int = 20


class ThresholdDefaults(BaseModel):
    min_liquidity_usd: float = 10000
    min_volume_usd: float = 1000


class CacheConfig(BaseModel):
    ttl_s: float = 120.0
    max_age_s: float = 600.0


class AppConfig(BaseModel):
    db_path: str = "data/hyperstats.sqlite"
    dune: DuneConfig = DuneConfig()
    poller: PollerConfig = PollerConfig()
    extended_poll: ExtendedPollConfig = ExtendedPollConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    gecko: GeckoConfig = GeckoConfig()
    llama: LlamaConfig = LlamaConfig()
    cmc: CmcConfig = CmcConfig()
    thresholds: ThresholdDefaults = ThresholdDefaults()
    cache: CacheConfig = CacheConfig()
    secrets: Secrets = Field(default_factory=Secrets.from_env)


def load_config(path: str | Path) -> AppConfig:
    data: Dict[str, Any] = {}
    config_path = Path(path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
            if isinstance(loaded, dict):
                data = loaded
    if "secrets" in data:
        raise ValueError("secrets must come from the environment, not config.yaml")
    return AppConfig(**data)
