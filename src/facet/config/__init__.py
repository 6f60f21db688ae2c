"""Configuration schema and YAML loading."""

from facet.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, save_config
from facet.config.schema import (
    BreakerConfig,
    BusConfig,
    CoordinationConfig,
    FacetConfig,
    MetricThreshold,
    MonitoringConfig,
    MonitoringThresholds,
    RoutingConfig,
    RoutingWeights,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "BreakerConfig",
    "BusConfig",
    "ConfigError",
    "CoordinationConfig",
    "FacetConfig",
    "MetricThreshold",
    "MonitoringConfig",
    "MonitoringThresholds",
    "RoutingConfig",
    "RoutingWeights",
    "load_config",
    "save_config",
]
