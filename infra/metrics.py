"""Prometheus-backed metrics hooks for the position monitor and risk guard."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "exit_engine_"


class MetricsRecorder:
    """
    Expose account and exit stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_account: Dict[str, Any] = {}
        self._exit_counts: Dict[str, int] = {}

        if not self._enabled:
            self._balance_gauge = None
            self._hwm_gauge = None
            self._drawdown_gauge = None
            self._daily_loss_gauge = None
            self._win_rate_gauge = None
            self._positions_gauge = None
            self._emergency_gauge = None
            self._circuit_breaker_gauge = None
            self._circuit_breaker_trips_counter = None
            self._exits_counter = None
            self._exit_failures_counter = None
            self._price_failures_counter = None
            return

        self._balance_gauge = Gauge(
            f"{METRIC_PREFIX}balance_lamports",
            "Current account balance in lamports",
        )
        self._hwm_gauge = Gauge(
            f"{METRIC_PREFIX}high_water_mark_lamports",
            "Highest balance observed in lamports",
        )
        self._drawdown_gauge = Gauge(
            f"{METRIC_PREFIX}drawdown_pct",
            "Decline of balance from the high-water mark (percent)",
        )
        self._daily_loss_gauge = Gauge(
            f"{METRIC_PREFIX}daily_loss_pct",
            "Loss since the start of the UTC day (percent)",
        )
        self._win_rate_gauge = Gauge(
            f"{METRIC_PREFIX}win_rate_pct",
            "Share of closed trades with positive P&L (percent)",
        )
        self._positions_gauge = Gauge(
            f"{METRIC_PREFIX}open_positions",
            "Number of currently open positions",
        )
        self._emergency_gauge = Gauge(
            f"{METRIC_PREFIX}emergency_stop_active",
            "Emergency stop flag (0=clear, 1=active)",
        )
        self._circuit_breaker_gauge = Gauge(
            f"{METRIC_PREFIX}circuit_breaker_state",
            "Circuit breaker state (0=closed/safe, 1=open/tripped)",
            labelnames=("breaker",),
        )
        self._circuit_breaker_trips_counter = Counter(
            f"{METRIC_PREFIX}circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            labelnames=("breaker",),
        )
        self._exits_counter = Counter(
            f"{METRIC_PREFIX}exits_total",
            "Filled exits grouped by rule",
            labelnames=("rule",),
        )
        self._exit_failures_counter = Counter(
            f"{METRIC_PREFIX}exit_failures_total",
            "Exit orders that failed and were reopened",
        )
        self._price_failures_counter = Counter(
            f"{METRIC_PREFIX}price_fetch_failures_total",
            "Failed price fetches",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def record_account(self, snapshot: Dict[str, Any]) -> None:
        """Push an AccountRiskGuard.get_metrics() snapshot."""
        self._last_account = dict(snapshot)
        if not self._enabled:
            return
        self._balance_gauge.set(snapshot.get("current_balance", 0))
        self._hwm_gauge.set(snapshot.get("high_water_mark", 0))
        self._drawdown_gauge.set(snapshot.get("drawdown_pct", 0.0))
        self._daily_loss_gauge.set(snapshot.get("daily_loss_pct", 0.0))
        self._win_rate_gauge.set(snapshot.get("win_rate", 0.0))
        self._positions_gauge.set(snapshot.get("active_positions", 0))
        self._emergency_gauge.set(1 if snapshot.get("emergency_stop_active") else 0)
        for breaker, state in (snapshot.get("circuit_breakers") or {}).items():
            self._circuit_breaker_gauge.labels(breaker=breaker).set(1 if state.get("tripped") else 0)

    def record_open_positions(self, count: int) -> None:
        if self._enabled and self._positions_gauge:
            self._positions_gauge.set(max(count, 0))

    def record_circuit_breaker_trip(self, breaker_name: str) -> None:
        """Record a circuit breaker trip event"""
        if self._enabled:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1)
            self._circuit_breaker_trips_counter.labels(breaker=breaker_name).inc()

    def record_circuit_breaker_state(self, breaker_name: str, is_open: bool) -> None:
        """Record circuit breaker state (0=closed/safe, 1=open/tripped)"""
        if self._enabled:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1 if is_open else 0)

    def record_exit(self, reason: str) -> None:
        rule = self._normalize_exit_reason(reason)
        self._exit_counts[rule] = self._exit_counts.get(rule, 0) + 1
        if self._enabled:
            self._exits_counter.labels(rule=rule).inc()

    def record_exit_failure(self) -> None:
        if self._enabled:
            self._exit_failures_counter.inc()

    def record_price_failure(self) -> None:
        if self._enabled:
            self._price_failures_counter.inc()

    def last_account(self) -> Dict[str, Any]:
        return dict(self._last_account)

    def exit_counts(self) -> Dict[str, int]:
        return dict(self._exit_counts)

    @staticmethod
    def _normalize_exit_reason(reason: str) -> str:
        """Map free-form exit reasons to bounded label values."""
        if not reason:
            return "other"
        reason_lower = reason.lower()
        if reason_lower.startswith("take profit"):
            return "take_profit"
        if reason_lower.startswith("stop loss"):
            return "stop_loss"
        if reason_lower.startswith("trailing stop"):
            return "trailing_stop"
        if reason_lower.startswith("max holding time"):
            return "max_holding_time"
        if reason_lower.startswith("volatility"):
            return "volatility"
        if reason_lower.startswith("manual"):
            return "manual"
        return "other"


__all__ = ["MetricsRecorder"]
