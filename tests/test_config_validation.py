"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from tools.config_validator import (
    EngineConfig,
    ExitConfig,
    RiskConfig,
    build_engine_config,
    load_engine_config,
    validate_config_file,
)

ROOT_DIR = Path(__file__).resolve().parents[1]


def write_policy(tmp_path, data) -> Path:
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    return path


class TestPolicyFile:
    """Test the shipped policy.yaml"""

    def test_shipped_policy_is_valid(self):
        assert validate_config_file(str(ROOT_DIR / "config" / "policy.yaml")) == []

    def test_shipped_policy_loads(self):
        config = load_engine_config(str(ROOT_DIR / "config" / "policy.yaml"))
        assert isinstance(config, EngineConfig)
        assert config.exits.for_pattern("mega_pump").take_profit_pct == 50.0
        assert config.exits.for_pattern("smart_money").stop_loss_pct == -8.0
        assert config.exits.for_pattern("smart_money").volatility_lookback == 20

    def test_policy_file_env_override(self, tmp_path, monkeypatch):
        path = write_policy(tmp_path, {"risk": {"max_positions": 2}})
        monkeypatch.setenv("POLICY_FILE", str(path))
        assert load_engine_config().risk.max_positions == 2


class TestRiskValidation:
    """Test risk section validation"""

    def test_defaults_are_valid(self):
        config = RiskConfig()
        assert config.max_positions == 5
        assert config.circuit_breaker_cooldown_hours == 8

    @pytest.mark.parametrize("field,value", [
        ("max_positions", 0),
        ("max_drawdown_pct", -1.0),
        ("max_daily_loss_pct", 150.0),
        ("initial_balance_lamports", -5),
    ])
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ConfigurationError) as exc_info:
            build_engine_config({"risk": {field: value}}, source="policy.yaml")
        assert any(field in message for message in exc_info.value.errors)

    def test_emergency_threshold_below_drawdown_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_engine_config({"risk": {"max_drawdown_pct": 20.0, "emergency_stop_threshold_pct": 15.0}})
        assert "emergency_stop_threshold_pct" in " ".join(exc_info.value.errors)

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError):
            build_engine_config({"risk": {"max_posiitons": 3}})


class TestExitValidation:
    """Test exits section validation"""

    def test_positive_stop_loss_rejected(self):
        with pytest.raises(ConfigurationError):
            build_engine_config({"exits": {"loss": {"stop_loss_pct": 10.0}}})

    def test_pattern_override_merges_over_defaults(self):
        config = ExitConfig(patterns={"mega_pump": {"take_profit_pct": 50.0}})
        rules = config.for_pattern("mega_pump")
        assert rules.take_profit_pct == 50.0
        assert rules.stop_loss_pct == -10.0
        assert config.for_pattern("other") == config.for_pattern(None)

    def test_max_lookback_covers_pattern_overrides(self):
        config = ExitConfig(patterns={"slow": {"volatility_lookback": 30}})
        assert config.max_lookback() == 30
        assert ExitConfig().max_lookback() == 10

    def test_unknown_pattern_field_rejected(self):
        with pytest.raises(ConfigurationError):
            build_engine_config({"exits": {"patterns": {"x": {"moon_pct": 1}}}})


class TestFileErrors:
    """Test file-level failures"""

    def test_missing_file(self, tmp_path):
        errors = validate_config_file(str(tmp_path / "absent.yaml"))
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        path = write_policy(tmp_path, "risk:\n  max_positions: [1, 2\n")
        errors = validate_config_file(str(path))
        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]

    def test_load_raises_configuration_error(self, tmp_path):
        path = write_policy(tmp_path, {"monitor": {"analysis_seconds": 0}})
        with pytest.raises(ConfigurationError) as exc_info:
            load_engine_config(str(path))
        assert any("analysis_seconds" in e for e in exc_info.value.errors)

    def test_empty_file_uses_defaults(self, tmp_path):
        path = write_policy(tmp_path, "")
        assert validate_config_file(str(path)) == []
