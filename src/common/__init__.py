# === MODULE PURPOSE ===
# Common utilities shared across all modules.

from .config import Config, get_sync_config, get_web_config, load_config, resolve_env

__all__ = [
    "Config",
    "get_sync_config",
    "get_web_config",
    "load_config",
    "resolve_env",
]
