"""Tests for validators engine configuration."""

from __future__ import annotations

import json

import pytest

from unl.core import defaults
from unl.core.config import ConfigError, ValidatorsConfig, get_config, get_config_from_env

ENV_VARS = [
    "UNL_CONFIG",
    "UNL_TARGET_COUNT",
    "UNL_CHECK_INTERVAL",
    "UNL_FETCH_TIMEOUT",
    "UNL_SCORE_WINDOW",
    "UNL_DATABASE_PATH",
    "UNL_SOURCE_URLS",
    "UNL_SOURCE_FILES",
    "UNL_RPC_HOST",
    "UNL_RPC_PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestValidatorsConfig:
    """Test config construction and validation."""

    def test_defaults(self):
        config = ValidatorsConfig()
        assert config.target_count == defaults.DEFAULT_TARGET_COUNT
        assert config.check_interval_seconds == defaults.DEFAULT_CHECK_INTERVAL_SECONDS
        assert config.database_path.endswith("validators.sqlite")
        assert config.static_lists == {}

    @pytest.mark.parametrize("target", [0, -1, 2.5, True])
    def test_invalid_target_count(self, target):
        with pytest.raises(ConfigError):
            ValidatorsConfig(target_count=target)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("check_interval_seconds", 0),
            ("fetch_timeout_seconds", -1),
            ("score_window", -5),
            ("rpc_port", 70000),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            ValidatorsConfig(**{field: value})

    @pytest.mark.parametrize(
        "field,value",
        [
            ("check_interval_seconds", "x"),
            ("fetch_timeout_seconds", None),
            ("score_window", "64"),
            ("rpc_port", 8480.5),
        ],
    )
    def test_non_numeric_values(self, field, value):
        with pytest.raises(ConfigError) as exc:
            ValidatorsConfig(**{field: value})
        assert field in str(exc.value)

    def test_from_file_non_numeric_value(self, tmp_path):
        path = tmp_path / "unl.json"
        path.write_text(json.dumps({"check_interval_seconds": "x"}))
        with pytest.raises(ConfigError):
            ValidatorsConfig.from_file(path)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError) as exc:
            ValidatorsConfig.from_dict({"target_count": 5, "chosen_size": 5})
        assert "chosen_size" in str(exc.value)

    def test_from_file(self, tmp_path):
        path = tmp_path / "unl.json"
        path.write_text(json.dumps({
            "target_count": 12,
            "static_lists": {"bootstrap": ["k1", "k2"]},
            "source_urls": ["https://a.example/unl"],
        }))

        config = ValidatorsConfig.from_file(path)

        assert config.target_count == 12
        assert config.static_lists == {"bootstrap": ["k1", "k2"]}
        assert config.source_urls == ["https://a.example/unl"]

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(ConfigError):
            ValidatorsConfig.from_file(tmp_path / "missing.json")

    def test_from_file_invalid_json(self, tmp_path):
        path = tmp_path / "unl.json"
        path.write_text("{oops")
        with pytest.raises(ConfigError):
            ValidatorsConfig.from_file(path)

    def test_from_file_not_object(self, tmp_path):
        path = tmp_path / "unl.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            ValidatorsConfig.from_file(path)


class TestEnvironment:
    """Test UNL_* environment overrides."""

    def test_empty_env(self):
        assert get_config_from_env() == {}
        assert get_config() == ValidatorsConfig()

    def test_env_values(self, monkeypatch):
        monkeypatch.setenv("UNL_TARGET_COUNT", "8")
        monkeypatch.setenv("UNL_CHECK_INTERVAL", "60")
        monkeypatch.setenv("UNL_SOURCE_URLS", "https://a.example, https://b.example,")
        monkeypatch.setenv("UNL_RPC_PORT", "9000")

        config = get_config()

        assert config.target_count == 8
        assert config.check_interval_seconds == 60.0
        assert config.source_urls == ["https://a.example", "https://b.example"]
        assert config.rpc_port == 9000

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("UNL_TARGET_COUNT", "lots")
        with pytest.raises(ConfigError):
            get_config()

    def test_env_overrides_file(self, monkeypatch, tmp_path):
        path = tmp_path / "unl.json"
        path.write_text(json.dumps({"target_count": 12, "score_window": 64}))
        monkeypatch.setenv("UNL_CONFIG", str(path))
        monkeypatch.setenv("UNL_TARGET_COUNT", "20")

        config = get_config()

        assert config.target_count == 20
        assert config.score_window == 64
