import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = "config/settings.json"

DEFAULTS: dict[str, Any] = {
    "data_dir":  "data",
    "log_level": "INFO",
    "log_store": {"type": "json"},
    "http": {
        "timeout_secs":    30,
        "connect_retries": 2,
    },
    "rate_limit": {
        "requests_per_second":    0,
        "burst":                  1,
        "retry_base_delay_secs":  5.0,
        "retry_max_delay_secs":   60.0,
        "max_retries":            10,
    },
    "save":  {"batch_size": 5},
    "tasks": {"max_concurrent_crawls": 4},
}

# Environment variable -> (section, key); section None means top level
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "PAGETRAIL_DATA_DIR":  (None, "data_dir"),
    "PAGETRAIL_LOG_LEVEL": (None, "log_level"),
    "PAGETRAIL_LOG_STORE": ("log_store", "type"),
}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(path: Optional[str] = None) -> dict[str, Any]:
    """
    Load settings.json over the built-in defaults, then apply PAGETRAIL_*
    environment overrides (a .env file in the working directory is read
    first).

    A missing file is not an error: the defaults are used. A file that is
    present but not valid JSON raises json.JSONDecodeError.
    """
    load_dotenv()
    settings_path = Path(path or os.environ.get("PAGETRAIL_SETTINGS", DEFAULT_SETTINGS_PATH))

    file_settings: dict[str, Any] = {}
    if settings_path.exists():
        with open(settings_path, "r", encoding="utf-8") as f:
            file_settings = json.load(f)
        log.debug("Loaded settings from %s", settings_path)
    else:
        log.debug("No settings file at %s, using defaults", settings_path)

    settings = _merge(DEFAULTS, file_settings)

    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        if section is None:
            settings[key] = value
        else:
            settings.setdefault(section, {})[key] = value

    return settings
