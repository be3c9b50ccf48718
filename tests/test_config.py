from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from tradedesk.infrastructure.utils.config import BackendConfig, MarketDataConfig, RefreshConfig, TradeDeskConfig, load_config

OVERRIDES = ("BACKEND__ACCESS_TOKEN", "BACKEND__ANON_KEY", "BACKEND__URL", "TRADEDESK_USER_ID", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in OVERRIDES + ("ENVIRONMENT", "USER_ID", "BACKEND__KIND"):
        monkeypatch.delenv(name, raising=False)


def write_yaml(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_shipped_defaults_load():
    config = load_config(Path(__file__).resolve().parents[1] / "config" / "default.yaml")
    assert config.environment == "DEMO"
    assert config.backend.kind == "sqlite"
    assert config.market.price_ttl_sec == 30
    assert config.refresh.trading_poll_sec == 5
    assert config.user_id is None


def test_shipped_sections_only_carry_known_keys():
    raw = yaml.safe_load((Path(__file__).resolve().parents[1] / "config" / "default.yaml").read_text(encoding="utf-8"))
    assert set(raw["refresh"]) == set(RefreshConfig.model_fields)
    assert set(raw["market"]) <= set(MarketDataConfig.model_fields)


def test_yaml_values_and_env_secrets(tmp_path, monkeypatch):
    path = write_yaml(
        tmp_path,
        "environment: live\n"
        "log_level: debug\n"
        "backend:\n  kind: REST\n  url: https://desk.example.co/\n",
    )
    monkeypatch.setenv("BACKEND__ACCESS_TOKEN", "secret-token")
    monkeypatch.setenv("BACKEND__ANON_KEY", "anon")
    monkeypatch.setenv("TRADEDESK_USER_ID", "user-7")
    monkeypatch.setenv("LOG_LEVEL", "warning")

    config = TradeDeskConfig.from_yaml(path)

    assert config.environment == "LIVE"
    assert config.backend.kind == "rest"
    assert config.backend.url == "https://desk.example.co"
    assert config.backend.access_token == "secret-token"
    assert config.backend.anon_key == "anon"
    assert config.user_id == "user-7"
    assert config.log_level == "WARNING"


def test_env_url_wins_over_yaml(tmp_path, monkeypatch):
    path = write_yaml(tmp_path, "backend:\n  url: https://yaml.example.co\n")
    monkeypatch.setenv("BACKEND__URL", "https://env.example.co/")
    assert TradeDeskConfig.from_yaml(path).backend.url == "https://env.example.co"


@pytest.mark.parametrize(
    "text",
    [
        "backend:\n  kind: mysql\n",
        "log_level: chatty\n",
        "environment: staging\n",
        "market:\n  price_ttl_sec: 0\n",
        "backend: [unclosed\n",
    ],
)
def test_invalid_config_raises_value_error(tmp_path, text):
    with pytest.raises(ValueError):
        TradeDeskConfig.from_yaml(write_yaml(tmp_path, text))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        TradeDeskConfig.from_yaml(tmp_path / "nope.yaml")


def test_realtime_url():
    assert BackendConfig(url="https://xyz.supabase.co").realtime_url == "wss://xyz.supabase.co/realtime/v1/websocket"
    assert BackendConfig(url="http://localhost:54321").realtime_url == "ws://localhost:54321/realtime/v1/websocket"
    assert BackendConfig().realtime_url == ""
