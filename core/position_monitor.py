"""
Exit Engine Core: Position Monitor

Runs two independent periodic cycles over the open positions:

- price refresh: fetch one price per token concurrently (any fetch may fail
  without affecting the others), update the store, ratchet trailing stops
- analysis: evaluate exit rules per position; a signaled exit moves the
  position OPEN → CLOSING and is handed to a separate exit pool, so one slow
  OrderSink call never holds up analysis of the other positions

Lifecycle: stopped → running → stopped. ``stop()`` joins both cycle threads;
once it returns no further cycle starts.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.events import EventChannel, EventKind
from core.exceptions import PriceUnavailable
from core.exit_rules import ExitRuleEngine
from core.interfaces import OrderSink, PriceSource
from core.models import OrderResult, Position, PositionStatus, SellInstruction, TrailingStop, utcnow
from core.position_store import PositionStore
from core.risk import AccountRiskGuard
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class PositionMonitor:
    """Orchestrates price refresh, exit evaluation and exit execution."""

    def __init__(
        self,
        store: PositionStore,
        engine: ExitRuleEngine,
        guard: AccountRiskGuard,
        price_source: PriceSource,
        order_sink: OrderSink,
        config,
        alert_service=None,
        events: Optional[EventChannel] = None,
        state_store=None,
        metrics=None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.engine = engine
        self.guard = guard
        self.price_source = price_source
        self.order_sink = order_sink
        self.config = config
        self.alert_service = alert_service
        self.events = events
        self.state_store = state_store
        self.metrics = metrics
        self._clock = clock

        self._state = MonitorState.STOPPED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

        self._exit_pool: Optional[ThreadPoolExecutor] = None
        self._exit_pool_lock = threading.Lock()

        self._failure_lock = threading.Lock()
        self._price_failures: Dict[str, int] = {}
        self._suspended: Dict[str, str] = {}  # token -> label

        self._persist_lock = threading.Lock()
        self.last_refresh_at = None
        self.last_analysis_at = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> MonitorState:
        return self._state

    def is_running(self) -> bool:
        return self._state == MonitorState.RUNNING

    def start(self) -> None:
        with self._state_lock:
            if self._state == MonitorState.RUNNING:
                logger.debug("PositionMonitor already running")
                return
            self._stop_event = threading.Event()
            self._threads = [
                threading.Thread(
                    target=self._run_periodic,
                    args=("price-refresh", self.config.price_refresh_seconds, self.run_price_refresh, self._stop_event),
                    name="PositionMonitor-prices",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._run_periodic,
                    args=("analysis", self.config.analysis_seconds, self.run_analysis, self._stop_event),
                    name="PositionMonitor-analysis",
                    daemon=True,
                ),
            ]
            self._state = MonitorState.RUNNING
            for thread in self._threads:
                thread.start()
        logger.info(
            f"PositionMonitor started (price refresh every {self.config.price_refresh_seconds}s, "
            f"analysis every {self.config.analysis_seconds}s)"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel both cycles. In-flight cycles and exits finish; none start afterwards."""
        with self._state_lock:
            if self._state == MonitorState.STOPPED:
                return
            self._stop_event.set()
            threads, self._threads = self._threads, []
            self._state = MonitorState.STOPPED

        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout)

        with self._exit_pool_lock:
            pool, self._exit_pool = self._exit_pool, None
        if pool is not None:
            pool.shutdown(wait=True)
        logger.info("PositionMonitor stopped")

    @staticmethod
    def _run_periodic(name: str, interval: float, cycle: Callable[[], Any], stop_event: threading.Event) -> None:
        while not stop_event.wait(interval):
            try:
                cycle()
            except Exception:
                logger.exception(f"{name} cycle failed")

    def _get_exit_pool(self) -> ThreadPoolExecutor:
        with self._exit_pool_lock:
            if self._exit_pool is None:
                self._exit_pool = ThreadPoolExecutor(
                    max_workers=self.config.exit_workers, thread_name_prefix="exit"
                )
            return self._exit_pool

    # ------------------------------------------------------------------
    # Position management
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> Position:
        self.engine.apply_exit_rules(position)
        self.store.add(position)
        self.guard.increment_active_positions()
        logger.info(
            f"Added position {position.id}: {position.quantity} {position.label} @ {position.entry_price:.9f} "
            f"(cost {position.initial_cost_basis} lamports, pattern {position.pattern_tag})"
        )
        self._after_mutation()
        self._publish(
            EventKind.POSITION_ADDED,
            position_id=position.id,
            token_address=position.token_address,
            token_symbol=position.token_symbol,
        )
        return position

    def restore_positions(self, positions: List[Position]) -> int:
        """Re-track persisted positions after a restart. Returns how many were restored."""
        restored = 0
        for position in positions:
            if position.status == PositionStatus.CLOSED:
                continue
            if position.status == PositionStatus.CLOSING:
                # The exit never reported back before shutdown; make it retriable
                position.transition(PositionStatus.OPEN)
            if position.stop_loss is None and position.take_profit is None:
                self.engine.apply_exit_rules(position)
            try:
                self.store.add(position)
            except ValueError:
                logger.warning(f"Skipping duplicate persisted position {position.id}")
                continue
            restored += 1
        self.guard.set_active_positions(len(self.store))
        if self.metrics:
            self.metrics.record_open_positions(len(self.store))
        logger.info(f"Restored {restored} persisted positions")
        return restored

    def remove_position(self, position_id: str) -> Optional[Position]:
        """Stop tracking a position without sending an exit order."""
        with self.store.position_lock(position_id) as position:
            if position is None:
                logger.warning(f"remove_position: unknown position {position_id}")
                return None
            if position.status == PositionStatus.CLOSING:
                logger.warning(f"remove_position: exit in flight for {position_id}, not removing")
                return None
            self.store.remove(position_id)
        self.guard.decrement_active_positions()
        logger.info(f"Removed position {position_id} ({position.label})")
        self._after_mutation()
        self._publish(EventKind.POSITION_REMOVED, position_id=position_id, token_address=position.token_address)
        return position

    def update_position_exit_rules(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop_pct: Optional[float] = None,
    ) -> bool:
        """Manually edit a position's exit levels."""
        with self.store.position_lock(position_id) as position:
            if position is None or position.status != PositionStatus.OPEN:
                return False
            if stop_loss is not None:
                position.stop_loss = stop_loss
            if take_profit is not None:
                position.take_profit = take_profit
            if trailing_stop_pct is not None:
                current = position.trailing_stop
                high = max(current.highest_price_seen, position.current_price) if current else position.current_price
                position.trailing_stop = TrailingStop.activate(trailing_stop_pct, high)
            logger.info(
                f"Exit rules updated for {position_id}: stop={position.stop_loss} "
                f"take_profit={position.take_profit} trailing={position.trailing_stop}"
            )
        self._after_mutation()
        return True

    def exit_position(self, position_id: str, reason: str = "manual exit") -> bool:
        """Close a position now, through the same single-flight path as rule exits."""
        position = self.store.begin_exit(position_id)
        if position is None:
            logger.warning(f"exit_position: {position_id} unknown or exit already in flight")
            return False
        return self._execute_exit(position, reason)

    # ------------------------------------------------------------------
    # Price refresh cycle
    # ------------------------------------------------------------------

    def run_price_refresh(self) -> Dict[str, bool]:
        """
        Fetch one price per monitored token concurrently.

        Returns {token_address: fetched_ok}. Suspended tokens are skipped.
        """
        positions = self.store.open_positions()
        labels: Dict[str, str] = {}
        for position in positions:
            labels.setdefault(position.token_address, position.label)
        with self._failure_lock:
            tokens = [t for t in labels if t not in self._suspended]
        if not tokens:
            self.last_refresh_at = self._clock()
            return {}

        results: Dict[str, bool] = {}
        workers = max(1, min(self.config.max_price_workers, len(tokens)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="price") as pool:
            futures = {pool.submit(self._fetch_price, token): token for token in tokens}
            wait(futures)

        now = self._clock()
        for future, token in futures.items():
            error = future.exception()
            price = None if error else future.result()
            if price is None:
                self._record_price_failure(token, labels[token], error)
                results[token] = False
                continue
            self._record_price_success(token)
            self.store.update_token_price(token, price, now)
            self.guard.update_price(labels[token], price)
            self._activate_trailing_stops(token)
            results[token] = True

        self.last_refresh_at = now
        logger.debug(f"Price refresh: {sum(results.values())}/{len(results)} tokens updated")
        if any(results.values()):
            self._after_mutation()
        return results

    def _fetch_price(self, token_address: str) -> Optional[float]:
        price = self.price_source.get_price(token_address)
        if price is None or price <= 0:
            return None
        return float(price)

    def _activate_trailing_stops(self, token_address: str) -> None:
        for position in self.store.open_positions():
            if position.token_address != token_address:
                continue
            with self.store.position_lock(position.id) as locked:
                if locked is not None and locked.status == PositionStatus.OPEN:
                    self.engine.maybe_activate_trailing_stop(locked)

    def _record_price_failure(self, token: str, label: str, error: Optional[BaseException]) -> None:
        if isinstance(error, PriceUnavailable) and error.original is not None:
            detail = f"{type(error.original).__name__}: {error.original}"
        elif error is not None:
            detail = f"{type(error).__name__}: {error}"
        else:
            detail = "no price returned"
        if self.metrics:
            self.metrics.record_price_failure()

        with self._failure_lock:
            count = self._price_failures.get(token, 0) + 1
            self._price_failures[token] = count
            suspend = count >= self.config.max_consecutive_price_failures and token not in self._suspended
            if suspend:
                self._suspended[token] = label

        logger.warning(f"Price fetch failed for {label} ({token}), attempt {count}: {detail}")
        if suspend:
            logger.warning(
                f"Suspending price monitoring for {label} ({token}) after {count} consecutive failures; "
                "positions stay open"
            )
            self._alert(
                AlertSeverity.WARNING,
                f"⚠️ Price monitoring suspended: {label}",
                f"{count} consecutive price failures for {token}; positions remain open on stale prices",
                {"token_address": token, "failures": count, "last_error": detail},
            )

    def _record_price_success(self, token: str) -> None:
        with self._failure_lock:
            self._price_failures.pop(token, None)

    def resume_token(self, token_address: str) -> bool:
        """Lift a price-monitoring suspension."""
        with self._failure_lock:
            label = self._suspended.pop(token_address, None)
            self._price_failures.pop(token_address, None)
        if label is None:
            return False
        logger.info(f"Resumed price monitoring for {label} ({token_address})")
        return True

    def suspended_tokens(self) -> List[str]:
        with self._failure_lock:
            return list(self._suspended)

    # ------------------------------------------------------------------
    # Analysis cycle
    # ------------------------------------------------------------------

    def run_analysis(self, wait_for_exits: bool = False) -> List[Tuple[str, str]]:
        """
        Evaluate every open position and dispatch signaled exits.

        Returns [(position_id, reason)] for the exits this call dispatched.
        """
        now = self._clock()
        dispatched: List[Tuple[str, str]] = []
        futures: List[Future] = []
        stops_moved = False

        for snapshot in self.store.open_positions():
            with self.store.position_lock(snapshot.id) as position:
                if position is None or position.status != PositionStatus.OPEN:
                    continue
                history = self.store.price_history(position.token_address)
                stop_before = (position.stop_loss, position.stop_tightened)
                reason = self.engine.evaluate(position, history, now)
                if (position.stop_loss, position.stop_tightened) != stop_before:
                    stops_moved = True
                if not reason:
                    continue
                if self.store.begin_exit(position.id) is None:
                    continue
            logger.info(
                f"Exit signal for {position.id} ({position.label}) at {position.current_price:.9f}: {reason}"
            )
            dispatched.append((position.id, reason))
            futures.append(self._get_exit_pool().submit(self._execute_exit, position, reason))

        if stops_moved:
            self._after_mutation()
        self.guard.check_performance_metrics()
        if self.metrics:
            self.metrics.record_account(self.guard.get_metrics())
        self.last_analysis_at = now

        if wait_for_exits and futures:
            wait(futures)
        return dispatched

    # ------------------------------------------------------------------
    # Exit execution
    # ------------------------------------------------------------------

    def _execute_exit(self, position: Position, reason: str) -> bool:
        """Send the sell for a CLOSING position and settle the outcome."""
        instruction = SellInstruction(
            token_address=position.token_address,
            quantity=position.quantity,
            price=position.current_price,
            position_id=position.id,
            reason=reason,
        )
        execution_id = self.guard.start_trade_execution(position.label)
        try:
            result = self.order_sink.execute_order(instruction)
        except Exception as e:
            logger.exception(f"OrderSink raised for {position.id}")
            result = OrderResult(success=False, error=f"{type(e).__name__}: {e}")
        if result is None:
            result = OrderResult(success=False, error="order sink returned no result")
        self.guard.complete_trade_execution(execution_id, result.success, result.error)

        if not result.success:
            self._exit_failed(position, reason, result.error)
            return False
        self._exit_filled(position, reason, result, instruction.price)
        return True

    def _exit_failed(self, position: Position, reason: str, error: Optional[str]) -> None:
        self.store.finish_exit(position.id, success=False)
        if self.metrics:
            self.metrics.record_exit_failure()
        logger.error(f"Exit failed for {position.id} ({position.label}), reopened for retry: {error} [{reason}]")
        self._alert(
            AlertSeverity.CRITICAL,
            f"❌ Exit failed: {position.label}",
            f"Exit for {position.id} failed ({error}); position reopened for retry",
            {
                "position_id": position.id,
                "token_address": position.token_address,
                "reason": reason,
                "price": position.current_price,
            },
        )

    def _exit_filled(self, position: Position, reason: str, result: OrderResult, exit_price: float) -> None:
        cost = position.initial_cost_basis
        proceeds = result.proceeds
        estimated = proceeds is None
        if estimated:
            proceeds = estimate_proceeds(cost, position.entry_price, exit_price)
            logger.warning(
                f"OrderSink reported no proceeds for {position.id}; estimated {proceeds} lamports from price"
            )
        pnl = proceeds - cost
        pnl_pct = (pnl / cost * 100) if cost else 0.0
        held_seconds = position.holding_seconds(self._clock())

        self.store.finish_exit(position.id, success=True)
        self.guard.decrement_active_positions()
        self.guard.record_trade(pnl)
        if pnl < 0:
            snapshot = self.guard.get_metrics()
            self.guard.check_loss_alert(snapshot["drawdown_pct"], self.guard.config.drawdown_alert_threshold_pct)
        if self.metrics:
            self.metrics.record_exit(reason)
            self.metrics.record_open_positions(len(self.store))

        logger.info(
            f"Closed {position.id} ({position.label}): {reason}; pnl {pnl} lamports ({pnl_pct:+.2f}%)"
            f"{' [estimated]' if estimated else ''}, held {held_seconds / 60:.1f}m"
        )
        self._after_mutation()
        self._publish(
            EventKind.POSITION_CLOSED,
            position=position,
            reason=reason,
            pnl=pnl,
            pnl_pct=pnl_pct,
            proceeds=proceeds,
            proceeds_estimated=estimated,
            holding_seconds=held_seconds,
        )
        self._alert(
            AlertSeverity.INFO if pnl >= 0 else AlertSeverity.WARNING,
            f"{'✅' if pnl >= 0 else '🔻'} Position closed: {position.label}",
            f"{reason}; pnl {pnl} lamports ({pnl_pct:+.2f}%)",
            {"position_id": position.id, "pnl": pnl, "pnl_pct": round(pnl_pct, 2)},
        )

    # ------------------------------------------------------------------
    # Observability / persistence
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        positions = self.store.all()
        return {
            "ok": True,
            "state": self._state.value,
            "positions": len(positions),
            "closing": sum(1 for p in positions if p.status == PositionStatus.CLOSING),
            "suspended_tokens": self.suspended_tokens(),
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "last_analysis_at": self.last_analysis_at.isoformat() if self.last_analysis_at else None,
        }

    def persist(self) -> None:
        if self.state_store is None:
            return
        with self._persist_lock:
            self.state_store.save_positions(self.store.all())
            self.state_store.save_account(self.guard.export_state())

    def _after_mutation(self) -> None:
        if self.metrics:
            self.metrics.record_open_positions(len(self.store))
        try:
            self.persist()
        except OSError as e:
            logger.error(f"Failed to persist positions: {e}")

    def _publish(self, kind: EventKind, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(kind, **payload)

    def _alert(self, severity: AlertSeverity, title: str, message: str, context: Dict[str, Any]) -> None:
        if self.alert_service is not None:
            self.alert_service.notify(severity=severity, title=title, message=message, context=context)


def estimate_proceeds(cost_basis: int, entry_price: float, exit_price: float) -> int:
    """Proceeds implied by the price move, floored to whole lamports."""
    if entry_price <= 0:
        return 0
    value = Decimal(cost_basis) * Decimal(str(exit_price)) / Decimal(str(entry_price))
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


__all__ = ["MonitorState", "PositionMonitor", "estimate_proceeds"]
