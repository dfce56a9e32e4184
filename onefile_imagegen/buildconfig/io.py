"""Saved default configuration.

This module provides helpers for persisting a resolved BuildConfiguration
as the default for later invocations, and for loading it back.

An explicit password is never written to disk; a saved configuration that
was resolved with one falls back to a random password when loaded.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.buildconfig.resolver import ConfigError
from onefile_imagegen.types import PasswordMode

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def config_to_dict(
    config: BuildConfiguration, keep_password_mode: bool = False
) -> dict[str, Any]:
    """Serialize a configuration without any secret material.

    Args:
        config: Resolved build configuration.
        keep_password_mode: Report an explicit password mode as such instead
            of the random mode it is saved as.

    Returns:
        JSON/YAML-safe dictionary.
    """
    data = config.model_dump(mode="json", exclude={"password": {"value"}})
    if config.password.mode == PasswordMode.EXPLICIT and not keep_password_mode:
        data["password"]["mode"] = PasswordMode.RANDOM.value
    return data


def save_defaults(config: BuildConfiguration, path: Path) -> Path:
    """Write a configuration as the saved default.

    Args:
        config: Resolved build configuration.
        path: Destination file.

    Returns:
        Path to the written file.
    """
    if config.password.mode == PasswordMode.EXPLICIT:
        logger.info("Explicit password is not saved; defaults use a random one")

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False)

    logger.info("Saved default configuration to %s", path)
    return path


def load_defaults(path: Path) -> BuildConfiguration | None:
    """Load the saved default configuration, if any.

    Args:
        path: Saved defaults file.

    Returns:
        BuildConfiguration, or None when no defaults were saved.

    Raises:
        ConfigError: If the file exists but cannot be parsed or validated.
    """
    if not path.exists():
        return None

    try:
        data = load_yaml(path)
        return BuildConfiguration.model_validate(data)
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        raise ConfigError(
            f"Invalid saved defaults in {path}: {e}",
            code="invalid_defaults",
        ) from e


__all__ = ["config_to_dict", "load_defaults", "load_yaml", "save_defaults"]
