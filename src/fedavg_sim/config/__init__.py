"""Configuration schemas and validation."""

from .schemas import (
    Config,
    build_experiment_config,
    default_config,
    register_configs,
    validate_configuration,
)

__all__ = [
    "Config",
    "build_experiment_config",
    "default_config",
    "register_configs",
    "validate_configuration",
]
