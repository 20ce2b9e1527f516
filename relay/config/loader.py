"""
Configuration loader for LLM Relay.

Loads relay.yaml, validates it against the Pydantic schema, and checks
that the credentials the configuration refers to are present.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from relay.config.schema import RelayConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RELAY_CONFIG"

# Module-level cache: resolved path -> RelayConfig
_loaded_configs: dict[str, RelayConfig] = {}


def load_config(
    path: Optional[str | Path] = None,
    *,
    env_file: Optional[str | Path] = None,
) -> RelayConfig:
    """
    Load and validate the relay configuration.

    Args:
        path: Explicit path to a YAML file. Falls back to the
              RELAY_CONFIG environment variable; with neither set the
              built-in defaults are returned.
        env_file: Optional .env file loaded before resolving RELAY_CONFIG.

    Returns:
        Validated RelayConfig instance.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config is invalid.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return RelayConfig()

    config_path = Path(path)
    key = str(config_path.resolve())
    if key in _loaded_configs:
        return _loaded_configs[key]

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Config is not valid YAML: {config_path}\n{e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config must be a mapping at the top level: {config_path}")

    try:
        config = RelayConfig(**raw)
    except ValidationError as e:
        raise ValueError(f"Invalid relay config in {config_path}:\n{e}") from e

    logger.info(
        "config_loaded",
        extra={"path": str(config_path), "providers": len(config.providers)},
    )
    _loaded_configs[key] = config
    return config


def resolve_api_keys(config: RelayConfig, *, strict: bool = False) -> dict[str, str]:
    """
    Collect the API keys the configured providers refer to.

    Returns a dict of provider_id -> key for every provider whose key is
    set. Missing keys are logged; with ``strict=True`` they raise
    EnvironmentError instead.
    """
    resolved: dict[str, str] = {}
    missing: list[str] = []

    for provider in config.providers:
        if not provider.api_key_env:
            continue
        value = os.environ.get(provider.api_key_env)
        if value:
            resolved[provider.id] = value
        else:
            missing.append(provider.api_key_env)

    if missing:
        names = ", ".join(sorted(set(missing)))
        if strict:
            raise EnvironmentError(
                f"Missing required environment variables: {names}\n"
                f"Set them in your .env file or shell environment."
            )
        logger.warning("provider_keys_missing", extra={"missing": names})

    return resolved


def clear_cache() -> None:
    """Clear the config cache. Useful for testing."""
    _loaded_configs.clear()
