"""Configuration loading with environment variable substitution."""

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from rollgate.core.errors import ConfigError
from rollgate.runtime.config.config_data import ConfigData
from rollgate.runtime.config.config_utils import substitute_env_vars

CONFIG_PATH = Path("rollgate.yaml")


def load_config(file_path: Path = CONFIG_PATH, *, required: bool = False) -> ConfigData:
    """
    Load ``rollgate.yaml`` with environment variable substitution.

    Args:
        file_path: Path to the YAML file (default: rollgate.yaml)
        required: Raise if the file does not exist instead of using defaults

    Returns:
        Validated ConfigData

    Raises:
        ConfigError: If the file is missing (when required), a required
                     environment variable is unset, the YAML is invalid, or
                     the 'config' key is missing or fails validation

    YAML Structure Requirements:
        The YAML file must have a top-level 'config:' key containing configuration data.
    """
    if not file_path.exists():
        if required:
            raise ConfigError(f"Configuration file not found: {file_path}")
        logger.debug(f"No configuration at {file_path}; using defaults")
        return ConfigData()

    with open(file_path) as f:
        content = f.read()

    try:
        content = substitute_env_vars(content)
    except ValueError as e:
        raise ConfigError(f"Cannot load {file_path}", details=str(e)) from e

    try:
        loaded: dict[str, Any] | None = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML in {file_path}", details=str(e)) from e

    if not isinstance(loaded, dict) or "config" not in loaded:
        raise ConfigError(
            f"Invalid YAML structure in {file_path}",
            details="Missing top-level 'config' key",
        )

    try:
        config = ConfigData(**(loaded["config"] or {}))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {file_path}", details=str(e)) from e

    logger.info(
        f"Loaded configuration from {file_path}: "
        f"{len(config.clusters)} cluster(s), lease backend '{config.lease.backend}'"
    )
    return config
