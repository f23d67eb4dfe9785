from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


class AppConfig(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"


class HeliusConfig(BaseModel):
    api_key: str = ""
    api_base: str = "https://api.helius.xyz/v0"
    rpc_url: str = "https://mainnet.helius-rpc.com"
    # upstream allowance; sizes the process-wide permit pool
    requests_per_second: int = 10


class IngestionConfig(BaseModel):
    lookback_days: int = 365
    signature_page_size: int = 1000
    enrich_batch_size: int = 100
    parallel_batches: int = 5
    max_signatures: int = 50000
    max_retries: int = 3
    retry_base_delay_s: float = 0.5
    retry_max_delay_s: float = 30.0
    timeout_base_s: float = 10.0
    timeout_per_item_s: float = 0.15
    timeout_max_s: float = 60.0
    skip_failed: bool = True


class ClassifierConfig(BaseModel):
    reference_mint: str = WSOL_MINT
    quote_mints: List[str] = Field(default_factory=lambda: [USDC_MINT, USDT_MINT, WSOL_MINT])
    implausible_ref_amount: float = 10000.0
    native_decimals: int = 9
    swap_program_markers: List[str] = Field(
        default_factory=lambda: [
            "swap",
            "JUP",
            "Jupiter",
            "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",  # Raydium AMM v4
            "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",  # Raydium CLMM
            "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",  # Orca whirlpools
            "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P",  # pump.fun
        ]
    )


class MetadataConfig(BaseModel):
    lru_size: int = 5000
    known_ttl_s: int = 7 * 24 * 3600
    unknown_ttl_s: int = 3600
    batch_size: int = 1000
    unknown_retry_top_n: int = 10


class PricesConfig(BaseModel):
    cache_ttl_s: int = 60
    history_ttl_s: int = 30 * 24 * 3600
    history_miss_ttl_s: int = 3600
    source_timeout_s: float = 3.0
    batch_size: int = 100
    fallback_concurrency: int = 20
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex"
    jupiter_url: str = "https://lite-api.jup.ag/price/v2"
    birdeye_url: str = "https://public-api.birdeye.so"
    birdeye_api_key: str = ""
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    reference_coingecko_id: str = "solana"


class EngineConfig(BaseModel):
    dust_epsilon: float = 1e-6


class OrchestratorConfig(BaseModel):
    progress_ttl_s: int = 3600
    reuse_window_hours: int = 24
    summary_cache_ttl_s: int = 86400


class CacheConfig(BaseModel):
    redis_url: str = ""  # empty -> in-process cache
    prefix: str = "wallet_pnl:"


class StorageConfig(BaseModel):
    sqlite_path: str = "./db/wallet_pnl.db"


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    base_path: str = ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    helius: HeliusConfig = Field(default_factory=HeliusConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    prices: PricesConfig = Field(default_factory=PricesConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("helius")
    @classmethod
    def _validate_helius(cls, v: HeliusConfig) -> HeliusConfig:
        if v.requests_per_second <= 0:
            raise ValueError("helius.requests_per_second must be > 0")
        return v

    @field_validator("ingestion")
    @classmethod
    def _validate_ingestion(cls, v: IngestionConfig) -> IngestionConfig:
        if v.signature_page_size <= 0 or v.enrich_batch_size <= 0:
            raise ValueError("ingestion batch sizes must be > 0")
        if v.parallel_batches <= 0:
            raise ValueError("ingestion.parallel_batches must be > 0")
        if v.max_retries <= 0:
            raise ValueError("ingestion.max_retries must be > 0")
        if v.lookback_days <= 0:
            raise ValueError("ingestion.lookback_days must be > 0")
        return v

    @field_validator("classifier")
    @classmethod
    def _validate_classifier(cls, v: ClassifierConfig) -> ClassifierConfig:
        if not v.quote_mints:
            raise ValueError("classifier.quote_mints must not be empty")
        return v


def load_settings(config_path: Optional[str] = None) -> Settings:
    path = Path(config_path or "./configs/config.yaml")
    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
        for k, v in src.items():
            if isinstance(v, dict) and isinstance(dst.get(k), dict):
                deep_update(dst[k], v)
            else:
                dst[k] = v
        return dst

    def env_overrides() -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        valid_roots = set(Settings.model_fields.keys())
        for key, value in os.environ.items():
            if "__" not in key:
                continue
            parts = [p.strip().lower() for p in key.split("__") if p.strip()]
            if not parts or parts[0] not in valid_roots:
                continue
            cur = out
            for part in parts[:-1]:
                nxt = cur.get(part)
                if not isinstance(nxt, dict):
                    nxt = {}
                    cur[part] = nxt
                cur = nxt
            cur[parts[-1]] = value
        return out

    merged = deep_update(data, env_overrides())
    return Settings(**merged)
