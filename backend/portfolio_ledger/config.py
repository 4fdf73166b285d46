"""
Configuration management for the ledger service.

Handles loading, validating, and persisting application configuration, and
resolving the on-disk locations derived from it.
"""

import json
import logging
import os
from pathlib import Path

from .models import AppConfig

logger = logging.getLogger(__name__)

HOME_ENV = "PORTFOLIO_LEDGER_HOME"
DATA_DIR_ENV = "PORTFOLIO_LEDGER_DATA_DIR"
LOG_LEVEL_ENV = "PORTFOLIO_LEDGER_LOG_LEVEL"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _resolve_user_path(raw: str) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(raw.strip())))


def resolve_home_dir() -> Path:
    env_value = os.getenv(HOME_ENV, "").strip()
    if env_value:
        return _resolve_user_path(env_value)
    return Path.home() / ".portfolio-ledger"


class ConfigManager:
    """
    Manages application configuration.

    Handles loading from disk, environment overrides, and persistence.
    """

    def __init__(self, config_path: Path | None = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config file (defaults to <home>/config.json)
        """
        self.config_path = config_path or resolve_home_dir() / "config.json"
        self._config: AppConfig | None = None

    def get_config(self) -> AppConfig:
        """
        Get current configuration, loading from disk if needed.

        Returns:
            Current AppConfig with environment overrides applied
        """
        if self._config is None:
            self._config = self._apply_env_overrides(self._load_config())
        return self._config

    def set_config(self, config: AppConfig) -> AppConfig:
        """
        Update configuration and persist to disk.

        Args:
            config: New configuration

        Returns:
            Updated configuration
        """
        self._config = config
        self._save_config(config)
        return config

    def data_dir(self) -> Path:
        """
        Directory holding portfolio and market data files.

        Returns:
            Configured data_dir, or <home>/data when unset
        """
        configured = self.get_config().data_dir
        if configured.strip():
            return _resolve_user_path(configured)
        return self.config_path.parent / "data"

    def portfolios_path(self) -> Path:
        return self.data_dir() / "portfolios" / "portfolios.json"

    def rates_path(self) -> Path:
        return self.data_dir() / "market" / "rates.json"

    def _load_config(self) -> AppConfig:
        """Load configuration from disk or return defaults."""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            return AppConfig()

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return AppConfig(**data)
        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            return AppConfig()

    @staticmethod
    def _apply_env_overrides(config: AppConfig) -> AppConfig:
        updates: dict[str, object] = {}
        data_dir = os.getenv(DATA_DIR_ENV, "").strip()
        if data_dir:
            updates["data_dir"] = data_dir
        log_level = os.getenv(LOG_LEVEL_ENV, "").strip()
        if log_level:
            updates["log_level"] = log_level.upper()
        return config.model_copy(update=updates) if updates else config

    def _save_config(self, config: AppConfig) -> None:
        """
        Save configuration to disk.

        Args:
            config: Configuration to save
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(config.model_dump(), f, indent=2, ensure_ascii=False)
            logger.info(f"Saved config to {self.config_path}")
        except Exception as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")
            # Don't raise - keep runtime available even if persistence fails


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging once for the process.

    Args:
        level: Logging level name (e.g., "INFO", "DEBUG")
    """
    resolved = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    else:
        root.setLevel(resolved)
