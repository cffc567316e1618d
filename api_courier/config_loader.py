"""Config Loader - Loads the courier runtime configuration.

Handles loading YAML config files with environment variable substitution
and resolving storage paths relative to the config file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from api_courier.models import CourierConfig


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_courier_config(config_path: Path) -> CourierConfig:
    """Load runtime configuration from YAML with ${ENV_VAR} substitution.

    Relative storage paths are resolved against the config file's directory.
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        config = CourierConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e

    storage = config.storage
    storage.offline_path = resolve_relative_path(config_path, storage.offline_path)
    storage.etag_path = resolve_relative_path(config_path, storage.etag_path)
    return config


def resolve_relative_path(config_path: Path, ref: str | None) -> str | None:
    """Resolve ref relative to config_path's directory. Absolute paths pass through."""
    if ref is None:
        return None
    path = Path(ref)
    if path.is_absolute():
        return str(path)
    return str((config_path.parent / path).resolve())


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)
