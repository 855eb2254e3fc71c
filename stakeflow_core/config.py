"""
TOML-based configuration for StakeFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakeflow_core.config import load_config
    cfg = load_config("stakeflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stakeflow_core.precision import DEFAULT_DECIMALS, MAX_APY_BPS, SECONDS_PER_YEAR

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EngineConfig:
    """Accrual and validation settings."""
    seconds_per_year: int = SECONDS_PER_YEAR
    max_apy_bps: int = MAX_APY_BPS
    max_lockup_seconds: int = 10 * SECONDS_PER_YEAR
    # Admin time warp for local testing.  Never enable in production.
    allow_time_warp: bool = False


@dataclass
class AssetConfig:
    """An asset pre-created on the in-process token ledger."""
    asset_id: str = "ABC"
    decimals: int = DEFAULT_DECIMALS
    symbol: str = "ABC"


@dataclass
class GenesisConfig:
    """
    Initial token state.

    ``balances`` maps asset_id → {owner: base_units}.
    """
    assets: list[AssetConfig] = field(default_factory=lambda: [AssetConfig()])
    balances: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    require_signatures: bool = True    # authenticate POST requests
    signature_window_seconds: int = 300  # accepted nonce skew from server time
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    backend: str = "memory"            # "memory" or "sqlite"
    path: str = "data/stakeflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class StakeFlowConfig:
    """Top-level configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> StakeFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        STAKEFLOW_API_HOST        -> api.host
        STAKEFLOW_API_PORT        -> api.port   (also enables the API)
        STAKEFLOW_RATE_LIMIT_RPM  -> api.rate_limit_rpm
        STAKEFLOW_DB_PATH         -> storage.path  (switches to sqlite)
        STAKEFLOW_LOG_LEVEL       -> logging.level
        STAKEFLOW_LOG_FMT         -> logging.format
        STAKEFLOW_ALLOW_TIME_WARP -> engine.allow_time_warp
    """
    cfg = StakeFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("engine", cfg.engine),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
            genesis = data.get("genesis", {})
            if "assets" in genesis:
                cfg.genesis.assets = [AssetConfig(**a) for a in genesis["assets"]]
            if "balances" in genesis:
                cfg.genesis.balances = {
                    asset: {owner: int(units) for owner, units in owners.items()}
                    for asset, owners in genesis["balances"].items()
                }

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKEFLOW_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("STAKEFLOW_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("STAKEFLOW_RATE_LIMIT_RPM"):
        cfg.api.rate_limit_rpm = int(v)
    if v := os.environ.get("STAKEFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.backend = "sqlite"
    if v := os.environ.get("STAKEFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKEFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("STAKEFLOW_ALLOW_TIME_WARP"):
        cfg.engine.allow_time_warp = _parse_bool(v)

    return cfg
