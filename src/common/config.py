# === MODULE PURPOSE ===
# Configuration management for the position ledger service.
# Loads YAML configuration files and provides typed access to settings.

# === KEY CONCEPTS ===
# - YAML-based: Human-readable configuration format
# - Environment substitution: "${VAR:default}" values resolved at use site
# - Deployment switches (web bind, exchange sync) read from environment variables

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent

_TRUE_VALUES = ("true", "yes", "1", "on")


class Config:
    """
    Configuration loader and accessor.

    Loads configuration from YAML files and provides typed access
    to configuration values.

    Usage:
        config = Config.load("config/ledger-config.yaml")

        # Access nested values
        schema = config.get("database.ledger.schema", default="ledger")

        # Access with type checking
        level = config.get_str("logging.level", default="INFO")
    """

    def __init__(self, data: dict[str, Any]):
        self._data = data

    @classmethod
    def load(cls, config_path: str | Path) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config instance with loaded data

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loaded configuration from {path}")
        return cls(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from a dictionary."""
        return cls(data)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by dot-separated key.

        Args:
            key: Dot-separated path (e.g., "database.ledger.host")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value: Any = self._data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def get_str(self, key: str, default: str = "") -> str:
        """Get a string configuration value."""
        value = self.get(key, default)
        return str(value) if value is not None else default

    def get_int(self, key: str, default: int = 0) -> int:
        """Get an integer configuration value."""
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get a float configuration value."""
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get a boolean configuration value."""
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in _TRUE_VALUES
        return bool(value) if value is not None else default

    def get_dict(self, key: str, default: dict | None = None) -> dict:
        """Get a dictionary configuration value."""
        value = self.get(key, default)
        if isinstance(value, dict):
            return value
        return default if default is not None else {}

    @property
    def raw(self) -> dict[str, Any]:
        """Access raw configuration data."""
        return self._data

    def __repr__(self) -> str:
        return f"Config({list(self._data.keys())})"


def load_config(config_path: str | Path) -> Config:
    """
    Load configuration from a YAML file.

    This is a convenience function that wraps Config.load().
    Relative paths are resolved against the project root.
    """
    path = Path(config_path)
    if not path.is_absolute() and not path.exists():
        path = PROJECT_ROOT / path
    return Config.load(path)


def resolve_env(value: Any) -> Any:
    """
    Resolve "${VAR:default}" or "${VAR}" from the environment.

    Non-matching values are returned unchanged.
    """
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        inner = value[2:-1]
        if ":" in inner:
            var_name, default = inner.split(":", 1)
        else:
            var_name, default = inner, ""
        return os.environ.get(var_name, default)
    return value


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def get_web_config() -> dict[str, Any]:
    """
    Get Web API configuration from environment variables.

    Environment variables:
        WEB_HOST: Host to bind to (default: 0.0.0.0)
        WEB_PORT: Port to listen on (default: 8000)
    """
    return {
        "host": os.getenv("WEB_HOST", "0.0.0.0"),
        "port": int(os.getenv("WEB_PORT", "8000")),
    }


def get_sync_config() -> dict[str, Any]:
    """
    Get exchange sync configuration from environment variables.

    Environment variables:
        SYNC_ENABLED: Whether to sync exchange positions (default: false)
        SYNC_USER_ID: Ledger user that owns synced positions (required)
        SYNC_EXCHANGE: Exchange name stored on positions (default: asterdex)
        SYNC_FEED_URL: Base URL of the positions endpoint (required)
        SYNC_API_KEY: API key header value (optional)
        SYNC_POLL_INTERVAL: Seconds between runs (default: 60)
        SYNC_TIMEOUT: Feed request timeout in seconds (default: 15)
        SYNC_AUTO_START: Start the scheduler at boot instead of on the
            owner's first request (default: false)

    Returns:
        Dictionary with sync configuration. "enabled" is forced to False
        when a required variable is missing.
    """
    enabled = _env_bool("SYNC_ENABLED")
    config = {
        "enabled": enabled,
        "user_id": os.getenv("SYNC_USER_ID", ""),
        "exchange": os.getenv("SYNC_EXCHANGE", "asterdex"),
        "feed_url": os.getenv("SYNC_FEED_URL", ""),
        "api_key": os.getenv("SYNC_API_KEY", ""),
        "poll_interval": float(os.getenv("SYNC_POLL_INTERVAL", "60")),
        "timeout": float(os.getenv("SYNC_TIMEOUT", "15")),
        "auto_start": _env_bool("SYNC_AUTO_START"),
    }

    if enabled:
        missing = [
            name
            for name, key in (("SYNC_USER_ID", "user_id"), ("SYNC_FEED_URL", "feed_url"))
            if not config[key]
        ]
        if missing:
            logger.warning(
                f"Exchange sync disabled because required env vars are missing: {missing}"
            )
            config["enabled"] = False

    return config
