from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_ledger.config import DATA_DIR_ENV, HOME_ENV, LOG_LEVEL_ENV, ConfigManager, resolve_home_dir
from portfolio_ledger.models import AppConfig


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (HOME_ENV, DATA_DIR_ENV, LOG_LEVEL_ENV):
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_config_file_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    config = manager.get_config()
    assert config == AppConfig()
    assert manager.data_dir() == tmp_path / "data"
    assert manager.portfolios_path() == tmp_path / "data" / "portfolios" / "portfolios.json"
    assert manager.rates_path() == tmp_path / "data" / "market" / "rates.json"


def test_set_config_persists_and_reloads(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.json"
    manager = ConfigManager(config_path)
    manager.set_config(AppConfig(cache_ttl_sec=60, cash_flow_weighting="day_count"))

    saved = json.loads(config_path.read_text(encoding="utf-8"))
    assert saved["cache_ttl_sec"] == 60

    reloaded = ConfigManager(config_path).get_config()
    assert reloaded.cache_ttl_sec == 60
    assert reloaded.cash_flow_weighting == "day_count"


def test_corrupt_config_falls_back_to_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{broken", encoding="utf-8")
    assert ConfigManager(config_path).get_config() == AppConfig()


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(HOME_ENV, str(tmp_path / "home"))
    monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "elsewhere"))
    monkeypatch.setenv(LOG_LEVEL_ENV, "debug")

    assert resolve_home_dir() == tmp_path / "home"
    manager = ConfigManager()
    assert manager.config_path == tmp_path / "home" / "config.json"
    assert manager.get_config().log_level == "DEBUG"
    assert manager.data_dir() == tmp_path / "elsewhere"
