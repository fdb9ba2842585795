"""
Configuration Validation Module

Validates policy.yaml against Pydantic schemas and produces the typed
EngineConfig used by every component. Invalid values are fatal at startup.

Usage:
    from tools.config_validator import load_engine_config

    config = load_engine_config("config/policy.yaml")   # raises ConfigurationError

    errors = validate_config_file("config/policy.yaml")  # list of messages
"""
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_POLICY_FILE = "config/policy.yaml"


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ===== Risk guard =====
class RiskConfig(StrictModel):
    """Account-level guardrails. Balances and sizes are lamports."""
    initial_balance_lamports: int = Field(default=10_000_000_000, gt=0, description="Starting balance when no state is persisted")
    max_positions: int = Field(default=5, gt=0, description="Max concurrently open positions")
    max_position_size_lamports: int = Field(default=1_000_000_000, gt=0, description="Max cost of a single position")
    max_drawdown_pct: float = Field(default=10.0, gt=0, le=100, description="Drawdown that trips HIGH_DRAWDOWN")
    max_daily_loss_pct: float = Field(default=5.0, gt=0, le=100, description="Daily loss that trips HIGH_DAILY_LOSS")
    emergency_stop_threshold_pct: float = Field(default=15.0, gt=0, le=100, description="Loss that halts all admissions")
    circuit_breaker_cooldown_hours: float = Field(default=8.0, gt=0, description="Tripped breakers stop blocking after this")
    max_trades_per_minute: int = Field(default=5, gt=0)
    max_trades_per_hour: int = Field(default=30, gt=0)
    max_trades_per_day: int = Field(default=100, gt=0)
    max_volatility_pct: float = Field(default=25.0, gt=0, description="Admission volatility ceiling (stddev/mean %)")
    max_price_deviation_pct: float = Field(default=15.0, gt=0, description="Admission deviation from mean price")
    volatility_window_seconds: float = Field(default=300.0, gt=0, description="Window of price samples for admission checks")
    min_success_rate_pct: float = Field(default=70.0, ge=0, le=100, description="Execution success floor")
    min_executions_for_success_rate: int = Field(default=10, gt=0)
    max_execution_seconds: float = Field(default=15.0, gt=0, description="Slow execution warning threshold")
    consecutive_loss_alert_threshold: int = Field(default=3, gt=0)
    drawdown_alert_threshold_pct: float = Field(default=10.0, gt=0, le=100)

    @model_validator(mode="after")
    def validate_emergency_threshold(self) -> "RiskConfig":
        if self.emergency_stop_threshold_pct < self.max_drawdown_pct:
            raise ValueError(
                f"emergency_stop_threshold_pct ({self.emergency_stop_threshold_pct}) must be >= "
                f"max_drawdown_pct ({self.max_drawdown_pct})"
            )
        return self


# ===== Exit rules =====
class TimeExitConfig(StrictModel):
    max_holding_hours: float = Field(default=24.0, gt=0)
    stop_adjustment_after_minutes: Optional[float] = Field(default=60.0, gt=0, description="Tighten stop after this many minutes held")
    stop_adjustment_pct: Optional[float] = Field(default=-5.0, lt=0, gt=-100, description="Tightened stop, percent from entry")


class ProfitExitConfig(StrictModel):
    take_profit_pct: float = Field(default=30.0, gt=0)


class LossExitConfig(StrictModel):
    stop_loss_pct: float = Field(default=-10.0, lt=0, gt=-100, description="Negative percent from entry")


class TrailingStopConfig(StrictModel):
    enabled: bool = True
    activation_pct: float = Field(default=15.0, gt=0, description="Unrealized profit that activates trailing")
    trail_pct: float = Field(default=10.0, gt=0, lt=100, description="Distance below the highest price")


class VolatilityExitConfig(StrictModel):
    enabled: bool = True
    lookback_periods: int = Field(default=10, ge=2)
    std_dev_multiplier: float = Field(default=2.5, gt=0)
    profit_gate_pct: float = Field(default=5.0, description="Exit on a spike only above this profit...")
    severe_spike_factor: float = Field(default=1.5, gt=1, description="...or when the spike exceeds threshold x factor")


class PatternOverride(StrictModel):
    """Typed patch over the global exit rules; unset fields fall back to global values."""
    stop_loss_pct: Optional[float] = Field(default=None, lt=0, gt=-100)
    take_profit_pct: Optional[float] = Field(default=None, gt=0)
    trail_pct: Optional[float] = Field(default=None, gt=0, lt=100)
    trail_activation_pct: Optional[float] = Field(default=None, gt=0)
    max_holding_hours: Optional[float] = Field(default=None, gt=0)
    volatility_lookback: Optional[int] = Field(default=None, ge=2)
    volatility_multiplier: Optional[float] = Field(default=None, gt=0)


@dataclass(frozen=True)
class ResolvedExitRules:
    """Effective exit rules for one pattern tag."""
    stop_loss_pct: float
    take_profit_pct: float
    trailing_enabled: bool
    trail_pct: float
    trail_activation_pct: float
    max_holding_hours: float
    stop_adjustment_after_minutes: Optional[float]
    stop_adjustment_pct: Optional[float]
    volatility_enabled: bool
    volatility_lookback: int
    volatility_multiplier: float
    volatility_profit_gate_pct: float
    volatility_severe_factor: float

    def patched(self, override: "PatternOverride") -> "ResolvedExitRules":
        # PatternOverride field names match ours one to one
        return replace(self, **override.model_dump(exclude_none=True))


class ExitConfig(StrictModel):
    time: TimeExitConfig = Field(default_factory=TimeExitConfig)
    profit: ProfitExitConfig = Field(default_factory=ProfitExitConfig)
    loss: LossExitConfig = Field(default_factory=LossExitConfig)
    trailing: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    volatility: VolatilityExitConfig = Field(default_factory=VolatilityExitConfig)
    patterns: Dict[str, PatternOverride] = Field(default_factory=dict)

    @field_validator("patterns")
    @classmethod
    def validate_pattern_names(cls, v: Dict[str, PatternOverride]) -> Dict[str, PatternOverride]:
        for name in v:
            if not str(name).strip():
                raise ValueError("Pattern override names must be non-empty")
        return v

    def for_pattern(self, pattern_tag: Optional[str]) -> "ResolvedExitRules":
        """Global rules with the pattern's override (if any) applied field by field."""
        base = ResolvedExitRules(
            stop_loss_pct=self.loss.stop_loss_pct,
            take_profit_pct=self.profit.take_profit_pct,
            trailing_enabled=self.trailing.enabled,
            trail_pct=self.trailing.trail_pct,
            trail_activation_pct=self.trailing.activation_pct,
            max_holding_hours=self.time.max_holding_hours,
            stop_adjustment_after_minutes=self.time.stop_adjustment_after_minutes,
            stop_adjustment_pct=self.time.stop_adjustment_pct,
            volatility_enabled=self.volatility.enabled,
            volatility_lookback=self.volatility.lookback_periods,
            volatility_multiplier=self.volatility.std_dev_multiplier,
            volatility_profit_gate_pct=self.volatility.profit_gate_pct,
            volatility_severe_factor=self.volatility.severe_spike_factor,
        )
        override = self.patterns.get(pattern_tag) if pattern_tag else None
        if override is None:
            return base
        return base.patched(override)

    def max_lookback(self) -> int:
        """Largest lookback any rule set may ask for; sizes the price-history buffers."""
        lookbacks = [self.volatility.lookback_periods]
        lookbacks.extend(p.volatility_lookback for p in self.patterns.values() if p.volatility_lookback)
        return max(lookbacks)


# ===== Runtime =====
class MonitorConfig(StrictModel):
    price_refresh_seconds: float = Field(default=10.0, gt=0)
    analysis_seconds: float = Field(default=30.0, gt=0)
    max_price_workers: int = Field(default=16, gt=0, description="Upper bound on concurrent price fetches")
    exit_workers: int = Field(default=4, gt=0, description="Concurrent exit submissions")
    max_consecutive_price_failures: int = Field(default=5, gt=0)


class AlertsConfig(StrictModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = True
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    history_size: int = Field(default=200, gt=0)


class PersistenceConfig(StrictModel):
    enabled: bool = True
    positions_file: str = "data/open_positions.json"
    account_file: str = "data/account_state.json"


class MetricsConfig(StrictModel):
    enabled: bool = True
    port: int = Field(default=9100, gt=0, lt=65536)


class HealthConfig(StrictModel):
    enabled: bool = False
    port: int = Field(default=8080, ge=0, lt=65536)


class LoggingConfig(StrictModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/exit-engine.log"


class PriceFeedConfig(StrictModel):
    base_url: str = "http://localhost:8000"
    price_field: str = "price"
    timeout_seconds: float = Field(default=5.0, gt=0)


class ExecutionConfig(StrictModel):
    mode: str = Field(default="dry_run", pattern="^(dry_run)$", description="Only the simulated sink ships with the engine")
    slippage_bps: float = Field(default=100.0, ge=0, lt=10000)


class EngineConfig(StrictModel):
    """Complete policy file schema"""
    risk: RiskConfig = Field(default_factory=RiskConfig)
    exits: ExitConfig = Field(default_factory=ExitConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validation_messages(source: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"]) or "<root>"
        messages.append(f"{source}: {field}: {item['msg']}")
    return messages


def build_engine_config(raw: Optional[Dict[str, Any]] = None, source: str = "<dict>") -> EngineConfig:
    """Validate a raw mapping. Raises ConfigurationError with every problem found."""
    try:
        return EngineConfig(**(raw or {}))
    except ValidationError as e:
        errors = _validation_messages(source, e)
        raise ConfigurationError(f"Invalid configuration: {len(errors)} error(s) found", errors) from e


def validate_config_file(path: str = DEFAULT_POLICY_FILE) -> List[str]:
    """
    Validate a policy file against the schema.

    Returns:
        List of error messages (empty if valid)
    """
    file_path = Path(path)
    try:
        build_engine_config(load_yaml_file(file_path), source=file_path.name)
    except FileNotFoundError as e:
        return [f"{file_path.name}: {e}"]
    except yaml.YAMLError as e:
        return [f"{file_path.name}: Invalid YAML - {e}"]
    except ConfigurationError as e:
        return e.errors
    logger.info("✅ %s validation passed", file_path.name)
    return []


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load and validate the policy file (POLICY_FILE env var overrides the default path).

    Raises:
        ConfigurationError: on a missing, malformed or invalid file
    """
    file_path = Path(path or os.getenv("POLICY_FILE", DEFAULT_POLICY_FILE))
    errors = validate_config_file(str(file_path))
    if errors:
        for idx, error in enumerate(errors, start=1):
            logger.error("%2d. %s", idx, error)
        raise ConfigurationError(f"Invalid configuration in {file_path}: {len(errors)} error(s) found", errors)
    return build_engine_config(load_yaml_file(file_path), source=file_path.name)


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    target = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_POLICY_FILE
    problems = validate_config_file(target)

    if problems:
        print("\n❌ Configuration Validation Failed:\n")
        for problem in problems:
            print(f"  • {problem}")
        print()
        sys.exit(1)
    print("\n✅ Configuration is valid!\n")
    sys.exit(0)
