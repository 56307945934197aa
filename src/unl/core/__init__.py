"""Core configuration for the validators engine."""

from .config import ConfigError, ValidatorsConfig, get_config

__all__ = [
    "ConfigError",
    "ValidatorsConfig",
    "get_config",
]
