"""
Exit Engine Core: Account Risk Guard

Account-level guardrails: balance, high-water mark, drawdown, daily loss,
trade-rate limits and circuit breakers. Gates whether new positions may open;
never force-closes existing ones.

Amounts (balance, sizes, P&L) are integer lamports.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
import logging
import math
import threading

from core.events import EventChannel, EventKind
from core.models import parse_timestamp, utcnow
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


class CircuitBreakerReason(Enum):
    HIGH_VOLATILITY = "HIGH_VOLATILITY"
    PRICE_DEVIATION = "PRICE_DEVIATION"
    TRADE_RATE_EXCEEDED = "TRADE_RATE_EXCEEDED"
    HIGH_DRAWDOWN = "HIGH_DRAWDOWN"
    HIGH_DAILY_LOSS = "HIGH_DAILY_LOSS"
    LOW_SUCCESS_RATE = "LOW_SUCCESS_RATE"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    MANUAL_STOP = "MANUAL_STOP"
    CONTRACT_RISK = "CONTRACT_RISK"


@dataclass
class CircuitBreakerState:
    tripped: bool = False
    tripped_at: Optional[datetime] = None
    message: str = ""

    def is_blocking(self, now: datetime, cooldown: timedelta) -> bool:
        """Tripped and still inside the cooldown window."""
        if not self.tripped:
            return False
        if self.tripped_at is None:
            return True
        return now - self.tripped_at < cooldown


@dataclass
class TradeRecord:
    pnl: int
    timestamp: datetime


@dataclass
class TradeExecution:
    token_symbol: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None


@dataclass
class AccountState:
    """Single process-wide account record."""
    current_balance: int
    high_water_mark: int
    daily_start_balance: int
    day: date
    active_position_count: int = 0
    trades: List[TradeRecord] = field(default_factory=list)
    trade_timestamps: List[datetime] = field(default_factory=list)
    circuit_breakers: Dict[CircuitBreakerReason, CircuitBreakerState] = field(
        default_factory=lambda: {reason: CircuitBreakerState() for reason in CircuitBreakerReason}
    )
    emergency_stop_active: bool = False
    system_enabled: bool = True
    consecutive_losses: int = 0
    total_pnl: int = 0


# (severity, title, message, context) queued while the lock is held
_Notice = Tuple[AlertSeverity, str, str, Dict[str, Any]]


class AccountRiskGuard:
    """
    Enforces account-level risk constraints.

    Admission checks (in order):
    1. Active position count
    2. Position size
    3. Circuit breakers still inside their cooldown
    4. Emergency stop
    5. Manual system disable
    6. Trade-rate limits
    7. Token volatility / price deviation
    8. Execution success rate

    Thread-safe: every public method takes the guard lock. Alerts and events are
    dispatched after the lock is released.
    """

    def __init__(
        self,
        config,
        alert_service=None,
        events: Optional[EventChannel] = None,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
        initial_state: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.alert_service = alert_service
        self.events = events
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.RLock()
        self._cooldown = timedelta(hours=config.circuit_breaker_cooldown_hours)

        now = clock()
        balance = int(config.initial_balance_lamports)
        self.state = AccountState(
            current_balance=balance,
            high_water_mark=balance,
            daily_start_balance=balance,
            day=now.date(),
        )
        self._price_samples: Dict[str, Deque[Tuple[datetime, float]]] = {}
        self._executions: Dict[str, TradeExecution] = {}
        self._execution_seq = 0
        self._loss_streak_alerted = False

        if initial_state:
            self._hydrate(initial_state, now)

        logger.info(
            f"Initialized AccountRiskGuard: balance={self.state.current_balance} lamports, "
            f"max_positions={config.max_positions}, max_drawdown={config.max_drawdown_pct}%, "
            f"emergency_stop={config.emergency_stop_threshold_pct}%"
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def can_open_position(self, size: int, token_symbol: str, price: float) -> bool:
        """Return True if a new position of ``size`` lamports may open now."""
        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            now = self._clock()
            self._roll_day_locked(now)
            allowed = self._admission_locked(size, token_symbol, price, now, notices, events)
        self._dispatch(notices, events)
        return allowed

    def _admission_locked(self, size, token_symbol, price, now, notices, events) -> bool:
        cfg = self.config
        if not _is_number(size) or size < 0 or not _is_number(price) or price <= 0:
            logger.warning(f"Rejecting admission for {token_symbol}: invalid size={size!r} price={price!r}")
            return False

        if self.state.active_position_count >= cfg.max_positions:
            logger.warning(
                f"Max positions reached: {self.state.active_position_count}/{cfg.max_positions}"
            )
            return False

        if size > cfg.max_position_size_lamports:
            logger.warning(f"Position size {size} exceeds max {cfg.max_position_size_lamports}")
            return False

        blocking = self._blocking_breakers_locked(now)
        if blocking:
            logger.warning(
                f"Circuit breaker active: {', '.join(r.value for r in blocking)}, cannot open position"
            )
            return False

        if self.state.emergency_stop_active:
            logger.warning("Emergency stop is active, cannot open position")
            return False

        if not self.state.system_enabled:
            logger.warning("System is disabled, cannot open position")
            return False

        if not self._check_rate_limits_locked(now):
            self._trip_locked(CircuitBreakerReason.TRADE_RATE_EXCEEDED, "Trade rate limits exceeded", now, notices, events)
            return False

        if not self._check_volatility_locked(token_symbol, price, now, notices, events):
            logger.warning(f"Volatility check failed for {token_symbol}")
            return False

        if not self._check_success_rate_locked(now, notices, events):
            logger.warning("Execution success rate below threshold")
            return False

        return True

    def _blocking_breakers_locked(self, now: datetime) -> List[CircuitBreakerReason]:
        return [
            reason for reason, breaker in self.state.circuit_breakers.items()
            if breaker.is_blocking(now, self._cooldown)
        ]

    def _check_rate_limits_locked(self, now: datetime) -> bool:
        cfg = self.config
        per_minute = self._trades_since_locked(now - timedelta(minutes=1))
        if per_minute >= cfg.max_trades_per_minute:
            logger.warning(f"Trade rate limit: {per_minute} trades in the last minute")
            return False
        per_hour = self._trades_since_locked(now - timedelta(hours=1))
        if per_hour >= cfg.max_trades_per_hour:
            logger.warning(f"Trade rate limit: {per_hour} trades in the last hour")
            return False
        per_day = self._trades_since_locked(now - timedelta(days=1))
        if per_day >= cfg.max_trades_per_day:
            logger.warning(f"Trade rate limit: {per_day} trades in the last day")
            return False
        return True

    def _trades_since_locked(self, cutoff: datetime) -> int:
        return sum(1 for ts in self.state.trade_timestamps if ts >= cutoff)

    def _check_volatility_locked(self, token_symbol, price, now, notices, events) -> bool:
        samples = self._price_samples.get(token_symbol)
        if samples:
            self._prune_samples(samples, now)
        if not samples or len(samples) < 2:
            return True

        prices = [p for _, p in samples]
        mean = sum(prices) / len(prices)
        if mean <= 0:
            return True
        variance = sum((p - mean) ** 2 for p in prices) / len(prices)
        volatility = math.sqrt(variance) / mean * 100
        deviation = abs((price - mean) / mean * 100)

        if volatility > self.config.max_volatility_pct:
            self._trip_locked(
                CircuitBreakerReason.HIGH_VOLATILITY,
                f"Volatility {volatility:.2f}% exceeds threshold {self.config.max_volatility_pct}%",
                now, notices, events,
            )
            return False
        if deviation > self.config.max_price_deviation_pct:
            self._trip_locked(
                CircuitBreakerReason.PRICE_DEVIATION,
                f"Price deviation {deviation:.2f}% exceeds threshold {self.config.max_price_deviation_pct}%",
                now, notices, events,
            )
            return False
        return True

    def _check_success_rate_locked(self, now, notices, events) -> bool:
        completed = [e for e in self._executions.values() if e.ended_at is not None]
        if len(completed) < self.config.min_executions_for_success_rate:
            return True
        rate = self._success_rate_locked()
        if rate < self.config.min_success_rate_pct:
            self._trip_locked(
                CircuitBreakerReason.LOW_SUCCESS_RATE,
                f"Success rate {rate:.2f}% below threshold {self.config.min_success_rate_pct}%",
                now, notices, events,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Trades and balance
    # ------------------------------------------------------------------

    def record_trade(self, pnl: int) -> None:
        """Apply a completed trade's realized P&L (lamports) and re-run the checks."""
        if isinstance(pnl, bool) or not isinstance(pnl, int):
            if not _is_number(pnl):
                logger.error(f"Ignoring trade with non-numeric pnl {pnl!r}")
                return
            pnl = int(pnl)

        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            now = self._clock()
            self._roll_day_locked(now)
            state = self.state
            state.trades.append(TradeRecord(pnl=pnl, timestamp=now))
            state.trade_timestamps.append(now)
            state.current_balance += pnl
            state.total_pnl += pnl
            if state.current_balance > state.high_water_mark:
                state.high_water_mark = state.current_balance

            if pnl < 0:
                state.consecutive_losses += 1
            else:
                state.consecutive_losses = 0
                self._loss_streak_alerted = False

            threshold = self.config.consecutive_loss_alert_threshold
            if state.consecutive_losses >= threshold and not self._loss_streak_alerted:
                self._loss_streak_alerted = True
                notices.append(self._consecutive_loss_notice())

            logger.info(
                f"Trade recorded: pnl={pnl} lamports, balance={state.current_balance}, "
                f"hwm={state.high_water_mark}, streak={state.consecutive_losses}"
            )
            self._performance_checks_locked(now, notices, events)
        self._dispatch(notices, events)

    def check_performance_metrics(self) -> bool:
        """
        Periodic health check: drawdown, daily loss, emergency threshold, success rate.

        Returns False if any threshold is currently breached.
        """
        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            now = self._clock()
            self._roll_day_locked(now)
            healthy = self._performance_checks_locked(now, notices, events)
            healthy = self._check_success_rate_locked(now, notices, events) and healthy
        self._dispatch(notices, events)
        return healthy

    def _performance_checks_locked(self, now, notices, events) -> bool:
        cfg = self.config
        drawdown = self._drawdown_pct_locked()
        daily_loss = self._daily_loss_pct_locked()
        healthy = True

        if daily_loss >= cfg.max_daily_loss_pct:
            healthy = False
            self._trip_locked(
                CircuitBreakerReason.HIGH_DAILY_LOSS,
                f"Daily loss {daily_loss:.2f}% exceeds max {cfg.max_daily_loss_pct}%",
                now, notices, events,
            )
        if drawdown >= cfg.max_drawdown_pct:
            healthy = False
            self._trip_locked(
                CircuitBreakerReason.HIGH_DRAWDOWN,
                f"Drawdown {drawdown:.2f}% exceeds max {cfg.max_drawdown_pct}%",
                now, notices, events,
            )
        worst = max(drawdown, daily_loss)
        if worst >= cfg.emergency_stop_threshold_pct:
            healthy = False
            self._emergency_stop_locked(
                f"Loss {worst:.2f}% reached emergency threshold {cfg.emergency_stop_threshold_pct}%",
                now, notices, events,
            )
        return healthy

    def check_loss_alert(self, drawdown_pct: float, threshold_pct: float) -> None:
        """Alert on a consecutive-loss streak and on a drawdown beyond ``threshold_pct``."""
        notices: List[_Notice] = []
        with self._lock:
            if self.state.consecutive_losses >= self.config.consecutive_loss_alert_threshold:
                notices.append(self._consecutive_loss_notice())
            if abs(drawdown_pct) >= threshold_pct:
                notices.append((
                    AlertSeverity.CRITICAL,
                    "🚨 Drawdown Breach",
                    f"Drawdown Breach: {abs(drawdown_pct):.2f}% (threshold {threshold_pct}%)",
                    {
                        "drawdown_pct": round(abs(drawdown_pct), 2),
                        "threshold": threshold_pct,
                        "balance": self.state.current_balance,
                        "high_water_mark": self.state.high_water_mark,
                    },
                ))
        self._dispatch(notices, [])

    def _consecutive_loss_notice(self) -> _Notice:
        streak = self.state.consecutive_losses
        return (
            AlertSeverity.WARNING,
            f"⚠️ {streak} consecutive losses",
            f"{streak} consecutive losses; balance {self.state.current_balance} lamports",
            {"consecutive_losses": streak, "balance": self.state.current_balance},
        )

    def increment_active_positions(self) -> None:
        with self._lock:
            self.state.active_position_count += 1

    def decrement_active_positions(self) -> None:
        with self._lock:
            self.state.active_position_count = max(0, self.state.active_position_count - 1)

    def set_active_positions(self, count: int) -> None:
        with self._lock:
            self.state.active_position_count = max(0, int(count))

    # ------------------------------------------------------------------
    # Price samples and execution tracking
    # ------------------------------------------------------------------

    def update_price(self, token_symbol: str, price: float) -> None:
        """Feed a price sample for the admission volatility check."""
        if not _is_number(price) or price <= 0:
            logger.debug(f"Ignoring invalid price sample for {token_symbol}: {price!r}")
            return
        with self._lock:
            now = self._clock()
            samples = self._price_samples.setdefault(token_symbol, deque())
            samples.append((now, float(price)))
            self._prune_samples(samples, now)

    def _prune_samples(self, samples: Deque[Tuple[datetime, float]], now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.volatility_window_seconds)
        while samples and samples[0][0] < cutoff:
            samples.popleft()

    def start_trade_execution(self, token_symbol: str) -> str:
        with self._lock:
            now = self._clock()
            self._execution_seq += 1
            execution_id = f"{token_symbol}-{int(now.timestamp() * 1000)}-{self._execution_seq}"
            self._executions[execution_id] = TradeExecution(token_symbol=token_symbol, started_at=now)
            return execution_id

    def complete_trade_execution(self, execution_id: str, success: bool, error: Optional[str] = None) -> None:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                logger.error(f"Unknown trade execution id: {execution_id}")
                return
            now = self._clock()
            execution.ended_at = now
            execution.success = bool(success)
            execution.error = error
            elapsed = (now - execution.started_at).total_seconds()
            if elapsed > self.config.max_execution_seconds:
                logger.warning(
                    f"Trade execution for {execution.token_symbol} took {elapsed:.1f}s "
                    f"(max {self.config.max_execution_seconds}s)"
                )
            cutoff = now - timedelta(days=1)
            self._executions = {
                key: e for key, e in self._executions.items() if e.started_at >= cutoff
            }

    def _success_rate_locked(self) -> float:
        completed = [e for e in self._executions.values() if e.ended_at is not None]
        if not completed:
            return 100.0
        return sum(1 for e in completed if e.success) / len(completed) * 100

    # ------------------------------------------------------------------
    # Breakers and emergency stop
    # ------------------------------------------------------------------

    def trigger_circuit_breaker(self, reason: CircuitBreakerReason, message: Optional[str] = None) -> None:
        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            self._trip_locked(reason, message or "manual trigger", self._clock(), notices, events)
        self._dispatch(notices, events)

    def reset_circuit_breaker(self, reason: CircuitBreakerReason) -> None:
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            self._reset_locked(reason, events)
        self._dispatch([], events)

    def reset_all_circuit_breakers(self) -> None:
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            for reason in CircuitBreakerReason:
                self._reset_locked(reason, events)
        self._dispatch([], events)

    def is_circuit_breaker_tripped(self, reason: CircuitBreakerReason) -> bool:
        with self._lock:
            return self.state.circuit_breakers[reason].tripped

    def _trip_locked(self, reason, message, now, notices, events) -> None:
        breaker = self.state.circuit_breakers[reason]
        if breaker.is_blocking(now, self._cooldown):
            return
        # A breach that outlives the cooldown re-arms the breaker
        retrip = breaker.tripped
        breaker.tripped = True
        breaker.tripped_at = now
        breaker.message = message
        if retrip:
            logger.error(f"🚨 Circuit breaker re-triggered after cooldown: {reason.value} - {message}")
        else:
            logger.error(f"🚨 Circuit breaker triggered: {reason.value} - {message}")
        notices.append((
            AlertSeverity.CRITICAL,
            f"🛑 Circuit Breaker: {reason.value}",
            message,
            {
                "reason": reason.value,
                "balance": self.state.current_balance,
                "drawdown_pct": round(self._drawdown_pct_locked(), 2),
                "cooldown_hours": self.config.circuit_breaker_cooldown_hours,
            },
        ))
        events.append((EventKind.CIRCUIT_BREAKER, {"reason": reason.value, "message": message}))
        if self.metrics:
            self.metrics.record_circuit_breaker_trip(reason.value)

    def _reset_locked(self, reason, events) -> None:
        breaker = self.state.circuit_breakers[reason]
        if not breaker.tripped:
            return
        breaker.tripped = False
        breaker.tripped_at = None
        breaker.message = ""
        logger.info(f"Circuit breaker reset: {reason.value}")
        events.append((EventKind.CIRCUIT_BREAKER_RESET, {"reason": reason.value}))
        if self.metrics:
            self.metrics.record_circuit_breaker_state(reason.value, False)

    def trigger_emergency_stop(self, reason: str) -> None:
        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            self._emergency_stop_locked(reason, self._clock(), notices, events)
        self._dispatch(notices, events)

    def _emergency_stop_locked(self, reason, now, notices, events) -> None:
        if self.state.emergency_stop_active:
            return
        self.state.emergency_stop_active = True
        logger.error(f"🚨 EMERGENCY STOP - all new positions blocked: {reason}")
        notices.append((
            AlertSeverity.CRITICAL,
            "🚨 EMERGENCY STOP ACTIVATED",
            f"Trading halted until operator reset: {reason}",
            {
                "balance": self.state.current_balance,
                "high_water_mark": self.state.high_water_mark,
                "drawdown_pct": round(self._drawdown_pct_locked(), 2),
                "daily_loss_pct": round(self._daily_loss_pct_locked(), 2),
            },
        ))
        events.append((EventKind.EMERGENCY_STOP, {"reason": reason}))
        self._trip_locked(CircuitBreakerReason.EMERGENCY_STOP, reason, now, notices, events)

    def reset_emergency_stop(self) -> None:
        """Operator reset. Clears the flag and the EMERGENCY_STOP breaker."""
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            if not self.state.emergency_stop_active:
                return
            self.state.emergency_stop_active = False
            logger.warning("Emergency stop reset by operator")
            events.append((EventKind.EMERGENCY_STOP_RESET, {}))
            self._reset_locked(CircuitBreakerReason.EMERGENCY_STOP, events)
        self._dispatch([], events)

    def disable_system(self) -> None:
        notices: List[_Notice] = []
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            self.state.system_enabled = False
            logger.warning("System disabled by operator")
            self._trip_locked(CircuitBreakerReason.MANUAL_STOP, "System disabled", self._clock(), notices, events)
        self._dispatch(notices, events)

    def enable_system(self) -> None:
        events: List[Tuple[EventKind, Dict[str, Any]]] = []
        with self._lock:
            self.state.system_enabled = True
            logger.info("System enabled by operator")
            self._reset_locked(CircuitBreakerReason.MANUAL_STOP, events)
        self._dispatch([], events)

    # ------------------------------------------------------------------
    # Daily reset
    # ------------------------------------------------------------------

    def roll_day_if_needed(self, now: Optional[datetime] = None) -> bool:
        """Reset daily counters when the UTC day changed. Returns True on a roll."""
        with self._lock:
            return self._roll_day_locked(now or self._clock())

    def _roll_day_locked(self, now: datetime) -> bool:
        today = now.date()
        if today == self.state.day:
            return False
        state = self.state
        logger.info(
            f"UTC day rolled {state.day} -> {today}: daily start balance "
            f"{state.daily_start_balance} -> {state.current_balance}"
        )
        state.day = today
        state.daily_start_balance = state.current_balance
        cutoff = now - timedelta(days=1)
        state.trades = [t for t in state.trades if t.timestamp >= cutoff]
        state.trade_timestamps = [ts for ts in state.trade_timestamps if ts >= cutoff]
        self._executions = {k: e for k, e in self._executions.items() if e.started_at >= cutoff}
        return True

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _drawdown_pct_locked(self) -> float:
        hwm = self.state.high_water_mark
        if hwm <= 0:
            return 0.0
        return (hwm - self.state.current_balance) / hwm * 100

    def _daily_loss_pct_locked(self) -> float:
        start = self.state.daily_start_balance
        if start <= 0:
            return 0.0
        return (start - self.state.current_balance) / start * 100

    def get_metrics(self) -> Dict[str, Any]:
        """Read-only snapshot for observability."""
        with self._lock:
            now = self._clock()
            state = self.state
            trades = state.trades
            wins = sum(1 for t in trades if t.pnl > 0)
            daily_pnl = state.current_balance - state.daily_start_balance
            return {
                "current_balance": state.current_balance,
                "high_water_mark": state.high_water_mark,
                "daily_start_balance": state.daily_start_balance,
                "drawdown_pct": self._drawdown_pct_locked(),
                "daily_pnl": daily_pnl,
                "daily_loss_pct": max(0.0, self._daily_loss_pct_locked()),
                "win_rate": (wins / len(trades) * 100) if trades else 0.0,
                "total_trades": len(trades),
                "total_pnl": state.total_pnl,
                "active_positions": state.active_position_count,
                "max_positions": self.config.max_positions,
                "available_positions": max(0, self.config.max_positions - state.active_position_count),
                "success_rate": self._success_rate_locked(),
                "trades_last_minute": self._trades_since_locked(now - timedelta(minutes=1)),
                "trades_last_hour": self._trades_since_locked(now - timedelta(hours=1)),
                "trades_last_day": self._trades_since_locked(now - timedelta(days=1)),
                "consecutive_losses": state.consecutive_losses,
                "emergency_stop_active": state.emergency_stop_active,
                "system_enabled": state.system_enabled,
                "circuit_breakers": {
                    reason.value: {
                        "tripped": breaker.tripped,
                        "tripped_at": breaker.tripped_at.isoformat() if breaker.tripped_at else None,
                        "blocking": breaker.is_blocking(now, self._cooldown),
                        "message": breaker.message,
                    }
                    for reason, breaker in state.circuit_breakers.items()
                },
            }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """Account fields needed to resume after a restart."""
        with self._lock:
            state = self.state
            return {
                "current_balance": state.current_balance,
                "high_water_mark": state.high_water_mark,
                "daily_start_balance": state.daily_start_balance,
                "day": state.day.isoformat(),
                "emergency_stop_active": state.emergency_stop_active,
                "system_enabled": state.system_enabled,
                "consecutive_losses": state.consecutive_losses,
                "circuit_breakers": {
                    reason.value: {
                        "tripped": breaker.tripped,
                        "tripped_at": breaker.tripped_at.isoformat() if breaker.tripped_at else None,
                        "message": breaker.message,
                    }
                    for reason, breaker in state.circuit_breakers.items()
                    if breaker.tripped
                },
            }

    def _hydrate(self, data: Dict[str, Any], now: datetime) -> None:
        state = self.state
        if data.get("current_balance") is not None:
            state.current_balance = int(data["current_balance"])
        hwm = data.get("high_water_mark")
        state.high_water_mark = max(int(hwm) if hwm is not None else 0, state.current_balance)
        day = data.get("day")
        if data.get("daily_start_balance") is not None and day == now.date().isoformat():
            state.daily_start_balance = int(data["daily_start_balance"])
        else:
            state.daily_start_balance = state.current_balance
        state.emergency_stop_active = bool(data.get("emergency_stop_active", False))
        state.system_enabled = bool(data.get("system_enabled", True))
        state.consecutive_losses = int(data.get("consecutive_losses", 0) or 0)
        self._loss_streak_alerted = state.consecutive_losses >= self.config.consecutive_loss_alert_threshold

        for name, raw in (data.get("circuit_breakers") or {}).items():
            try:
                reason = CircuitBreakerReason(name)
            except ValueError:
                logger.warning(f"Ignoring unknown persisted circuit breaker {name!r}")
                continue
            if not raw or not raw.get("tripped"):
                continue
            breaker = state.circuit_breakers[reason]
            breaker.tripped = True
            # No trip time on record: start the cooldown now
            breaker.tripped_at = parse_timestamp(raw.get("tripped_at")) or now
            breaker.message = raw.get("message", "") or ""

        logger.info(
            f"Hydrated account state: balance={state.current_balance}, hwm={state.high_water_mark}, "
            f"emergency_stop={state.emergency_stop_active}, "
            f"tripped={[r.value for r, b in state.circuit_breakers.items() if b.tripped]}"
        )

    # ------------------------------------------------------------------

    def _dispatch(self, notices: List[_Notice], events: List[Tuple[EventKind, Dict[str, Any]]]) -> None:
        if self.events is not None:
            for kind, payload in events:
                self.events.publish(kind, **payload)
        if self.alert_service is not None:
            for severity, title, message, context in notices:
                self.alert_service.notify(severity=severity, title=title, message=message, context=context)
        if self.metrics is not None and (notices or events):
            self.metrics.record_account(self.get_metrics())


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


__all__ = [
    "AccountRiskGuard",
    "AccountState",
    "CircuitBreakerReason",
    "CircuitBreakerState",
    "TradeRecord",
]
