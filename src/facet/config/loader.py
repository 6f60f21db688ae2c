"""Configuration loading and validation."""

from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from facet.config.schema import FacetConfig

DEFAULT_CONFIG_PATH = Path.home() / ".facet" / "facet.yaml"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def load_config(path: Optional[Union[str, Path]] = None) -> FacetConfig:
    """Load and validate facet configuration from a YAML file.

    Args:
        path: Path to config file. If None, the default location is used.
              A missing file yields the default configuration.

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If the file exists but cannot be parsed or validated
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH
    elif isinstance(path, str):
        path = Path(path)

    if not path.exists():
        return FacetConfig()

    try:
        with open(path) as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config from {path}: {e}") from e

    if config_data is None:
        return FacetConfig()
    if not isinstance(config_data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")

    try:
        return FacetConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def save_config(config: FacetConfig, path: Optional[Union[str, Path]] = None) -> None:
    """Save configuration to a YAML file.

    Args:
        config: Configuration object to save
        path: Destination path. If None, uses the default location.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH
    elif isinstance(path, str):
        path = Path(path)

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
