"""Configuration management for the trade desk client.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (backend access token, anon key) come from .env / environment variables and must override YAML.
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendConfig(BaseModel):
    """Where balances, trades and the RPC procedures live."""

    kind: str = Field(default="sqlite", description="'sqlite' (local reference backend) or 'rest' (hosted)")
    url: str = Field(default="", description="Base URL of the hosted backend, e.g. https://xyz.supabase.co")
    anon_key: str = Field(default="", description="Public API key sent as the apikey header")
    access_token: str = Field(default="", description="User session token (bearer)")
    request_timeout_sec: float = Field(default=10.0, gt=0, le=120)
    realtime_heartbeat_sec: float = Field(default=25.0, gt=0, le=300)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if str(v).lower() not in {"sqlite", "rest"}:
            raise ValueError("backend kind must be 'sqlite' or 'rest'")
        return str(v).lower()

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = str(v or "").strip().rstrip("/")
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("backend url must start with http:// or https://")
        return v

    @property
    def realtime_url(self) -> str:
        if not self.url:
            return ""
        scheme, rest = self.url.split("://", 1)
        ws_scheme = "wss" if scheme == "https" else "ws"
        return f"{ws_scheme}://{rest}/realtime/v1/websocket"


class SQLiteConfig(BaseModel):
    path: str = Field(default="data/tradedesk.db")


class MarketDataConfig(BaseModel):
    """Price/candle sources and their cache windows."""

    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    price_ttl_sec: float = Field(default=30.0, gt=0)
    candle_ttl_sec: float = Field(default=60.0, gt=0)
    price_timeout_sec: float = Field(default=5.0, gt=0, le=60)
    ohlc_timeout_sec: float = Field(default=10.0, gt=0, le=120)
    history_size: int = Field(default=100, ge=5, le=10_000)
    default_candle_count: int = Field(default=30, ge=1, le=1000)


class RefreshConfig(BaseModel):
    dashboard_poll_sec: float = Field(default=3.0, gt=0)
    trading_poll_sec: float = Field(default=5.0, gt=0)


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class TradeDeskConfig(BaseSettings):
    """Main configuration class.

    YAML is parsed as base config, then secrets and a few key settings are
    re-applied from the environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="DEMO")
    log_level: str = Field(default="INFO")
    user_id: Optional[str] = Field(default=None, description="Signed-in user the client acts for")

    backend: BackendConfig = Field(default_factory=BackendConfig)
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)
    market: MarketDataConfig = Field(default_factory=MarketDataConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if str(v).upper() not in {"DEMO", "LIVE"}:
            raise ValueError("Environment must be 'DEMO' or 'LIVE'")
        return str(v).upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "TradeDeskConfig":
        """Load configuration from YAML without polluting environment.

        Steps:
        1) Parse YAML -> base config dict
        2) Validate into model
        3) Apply env overrides (BACKEND__ACCESS_TOKEN, etc.) on top
        """
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        try:
            base = cls(**data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")

        return base.apply_env_overrides()

    def apply_env_overrides(self) -> "TradeDeskConfig":
        if os.getenv("BACKEND__ACCESS_TOKEN"):
            self.backend.access_token = os.getenv("BACKEND__ACCESS_TOKEN", self.backend.access_token)

        if os.getenv("BACKEND__ANON_KEY"):
            self.backend.anon_key = os.getenv("BACKEND__ANON_KEY", self.backend.anon_key)

        if os.getenv("BACKEND__URL"):
            self.backend.url = os.getenv("BACKEND__URL", "").strip().rstrip("/")

        if os.getenv("TRADEDESK_USER_ID"):
            self.user_id = os.getenv("TRADEDESK_USER_ID")

        if os.getenv("LOG_LEVEL"):
            self.log_level = os.getenv("LOG_LEVEL", self.log_level).upper()

        return self


def load_config(config_path: Optional[Path] = None) -> TradeDeskConfig:
    """Load configuration from YAML + .env (env wins for secrets)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return TradeDeskConfig.from_yaml(config_path)


# Global config instance
_config: Optional[TradeDeskConfig] = None


def get_config() -> TradeDeskConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> TradeDeskConfig:
    global _config
    _config = load_config(config_path)
    return _config
