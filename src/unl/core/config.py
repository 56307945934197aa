"""Configuration for the validators engine.

Configuration comes from three layers, later layers winning:

1. Defaults in core.defaults
2. A JSON file named by UNL_CONFIG (or passed to from_file)
3. UNL_* environment variables

Example JSON file:
    {
        "target_count": 32,
        "check_interval_seconds": 3600,
        "static_lists": {"bootstrap": ["<hex key> label", "..."]},
        "static_files": ["/etc/unl/validators.txt"],
        "source_urls": ["https://lists.example.com/validators.txt"]
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from . import defaults

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when configuration or an administrative request is invalid."""

    pass


def _require_number(name: str, value: Any, integer: bool = False) -> None:
    allowed = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ConfigError(f"{name} must be {kind}, got {value!r}")


@dataclass
class ValidatorsConfig:
    """Recognized configuration options for the validators engine."""

    target_count: int = defaults.DEFAULT_TARGET_COUNT
    check_interval_seconds: float = defaults.DEFAULT_CHECK_INTERVAL_SECONDS
    fetch_timeout_seconds: float = defaults.DEFAULT_FETCH_TIMEOUT_SECONDS
    score_window: int = defaults.DEFAULT_SCORE_WINDOW
    database_path: str = str(defaults.DEFAULT_DATA_DIR / defaults.DATABASE_FILENAME)

    # Initial sources
    static_lists: dict[str, list[str]] = field(default_factory=dict)
    static_files: list[str] = field(default_factory=list)
    source_urls: list[str] = field(default_factory=list)

    # Administrative RPC
    rpc_host: str = defaults.DEFAULT_RPC_HOST
    rpc_port: int = defaults.DEFAULT_RPC_PORT

    def __post_init__(self):
        for name in ("target_count", "score_window", "rpc_port"):
            _require_number(name, getattr(self, name), integer=True)
        for name in ("check_interval_seconds", "fetch_timeout_seconds"):
            _require_number(name, getattr(self, name))
        if self.target_count < 1:
            raise ConfigError(f"target_count must be at least 1, got {self.target_count}")
        if self.check_interval_seconds <= 0:
            raise ConfigError("check_interval_seconds must be positive")
        if self.fetch_timeout_seconds <= 0:
            raise ConfigError("fetch_timeout_seconds must be positive")
        if self.score_window < 0:
            raise ConfigError("score_window must be zero (disabled) or positive")
        if not 0 < self.rpc_port < 65536:
            raise ConfigError(f"rpc_port out of range: {self.rpc_port}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorsConfig:
        """Create from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> ValidatorsConfig:
        """Load configuration from a JSON file."""
        path = Path(path).expanduser()
        try:
            data = json.loads(path.read_text())
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def get_config_from_env() -> dict[str, Any]:
    """Collect configuration overrides from UNL_* environment variables.

    Returns:
        Dict of ValidatorsConfig field overrides (only those set)
    """
    overrides: dict[str, Any] = {}

    converters = {
        "UNL_TARGET_COUNT": ("target_count", int),
        "UNL_CHECK_INTERVAL": ("check_interval_seconds", float),
        "UNL_FETCH_TIMEOUT": ("fetch_timeout_seconds", float),
        "UNL_SCORE_WINDOW": ("score_window", int),
        "UNL_DATABASE_PATH": ("database_path", str),
        "UNL_RPC_HOST": ("rpc_host", str),
        "UNL_RPC_PORT": ("rpc_port", int),
        "UNL_SOURCE_URLS": ("source_urls", _split_list),
        "UNL_SOURCE_FILES": ("static_files", _split_list),
    }

    for var, (key, convert) in converters.items():
        raw = os.environ.get(var)
        if raw is None or not raw.strip():
            continue
        try:
            overrides[key] = convert(raw.strip())
        except ValueError as e:
            raise ConfigError(f"Invalid value for {var}: {raw!r}") from e

    return overrides


def get_config(path: str | Path | None = None) -> ValidatorsConfig:
    """Build the effective configuration.

    Args:
        path: Optional JSON config file. Defaults to $UNL_CONFIG if set.

    Returns:
        Validated ValidatorsConfig
    """
    data: dict[str, Any] = {}

    path = path or os.environ.get("UNL_CONFIG")
    if path:
        data.update(ValidatorsConfig.from_file(path).to_dict())
        logger.debug(f"Loaded config file {path}")

    data.update(get_config_from_env())
    return ValidatorsConfig.from_dict(data)
