"""
Exit Engine Core: Exit Rules

Evaluates one position against the configured exit rules.

Priority (first match wins):
1. Take profit / stop loss price levels
2. Trailing stop
3. Max holding time (plus time-based stop tightening, which never exits by itself)
4. Volatility spike

Pattern overrides are resolved per position from the ``pattern_rules`` map given
to the constructor; unknown tags fall back to the global rules.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from core.models import Position, TrailingStop, utcnow
from tools.config_validator import ExitConfig, PatternOverride, ResolvedExitRules

logger = logging.getLogger(__name__)


class ExitRuleEngine:
    """Decides whether an open position must be closed, and why."""

    def __init__(self, exit_config: ExitConfig, pattern_rules: Optional[Dict[str, PatternOverride]] = None):
        self.exit_config = exit_config
        self.pattern_rules: Dict[str, PatternOverride] = dict(
            exit_config.patterns if pattern_rules is None else pattern_rules
        )
        self._global_rules = exit_config.for_pattern(None)
        self._resolved: Dict[str, ResolvedExitRules] = {}
        logger.info(
            f"Initialized ExitRuleEngine: stop={self._global_rules.stop_loss_pct}%, "
            f"take_profit={self._global_rules.take_profit_pct}%, "
            f"trailing={'on' if self._global_rules.trailing_enabled else 'off'}, "
            f"overrides={sorted(self.pattern_rules)}"
        )

    def rules_for(self, pattern_tag: Optional[str]) -> ResolvedExitRules:
        if not pattern_tag or pattern_tag not in self.pattern_rules:
            return self._global_rules
        rules = self._resolved.get(pattern_tag)
        if rules is None:
            rules = self._global_rules.patched(self.pattern_rules[pattern_tag])
            self._resolved[pattern_tag] = rules
        return rules

    # ------------------------------------------------------------------

    def apply_exit_rules(self, position: Position) -> None:
        """
        Set initial stop loss / take profit levels, and activate the trailing
        stop right away if the position is already past the activation profit.
        """
        rules = self.rules_for(position.pattern_tag)
        position.stop_loss = position.entry_price * (1 + rules.stop_loss_pct / 100)
        position.take_profit = position.entry_price * (1 + rules.take_profit_pct / 100)
        logger.info(
            f"Exit levels for {position.id} ({position.label}, {position.pattern_tag}): "
            f"stop={position.stop_loss:.6f} take_profit={position.take_profit:.6f}"
        )
        self.maybe_activate_trailing_stop(position)

    def maybe_activate_trailing_stop(self, position: Position) -> bool:
        """Activate the trailing stop once unrealized profit reaches the activation threshold."""
        if position.trailing_stop is not None:
            return False
        rules = self.rules_for(position.pattern_tag)
        if not rules.trailing_enabled or position.current_price is None:
            return False
        if position.pnl_pct < rules.trail_activation_pct:
            return False
        position.trailing_stop = TrailingStop.activate(rules.trail_pct, position.current_price)
        logger.info(
            f"Trailing stop activated for {position.id} at {position.current_price:.6f} "
            f"(pnl {position.pnl_pct:.2f}%, trail {rules.trail_pct}%, stop {position.trailing_stop.stop_price:.6f})"
        )
        return True

    # ------------------------------------------------------------------

    def evaluate(
        self,
        position: Position,
        price_history: Optional[Sequence[float]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Return the exit reason for ``position`` or None to keep holding."""
        if position.current_price is None:
            return None
        rules = self.rules_for(position.pattern_tag)
        now = now or utcnow()

        reason = self._check_price_levels(position)
        if reason:
            return reason
        reason = self._check_trailing_stop(position, rules)
        if reason:
            return reason
        reason = self._check_time(position, rules, now)
        if reason:
            return reason
        return self._check_volatility(position, rules, price_history or ())

    @staticmethod
    def _check_price_levels(position: Position) -> Optional[str]:
        price = position.current_price
        if position.take_profit is not None and price >= position.take_profit:
            return f"take profit hit at price {position.take_profit:.6f}"
        if position.stop_loss is not None and price <= position.stop_loss:
            return f"stop loss hit at price {position.stop_loss:.6f}"
        return None

    @staticmethod
    def _check_trailing_stop(position: Position, rules: ResolvedExitRules) -> Optional[str]:
        trailing = position.trailing_stop
        if not rules.trailing_enabled or trailing is None:
            return None
        if position.current_price <= trailing.stop_price:
            return f"trailing stop ({trailing.percent:g}%) hit at {trailing.stop_price:.6f}"
        return None

    @staticmethod
    def _check_time(position: Position, rules: ResolvedExitRules, now: datetime) -> Optional[str]:
        held = position.holding_seconds(now)
        if held >= rules.max_holding_hours * 3600:
            return f"max holding time ({rules.max_holding_hours:g}h)"

        # Tighten the stop after a while; the price-level check picks it up next cycle
        if (
            rules.stop_adjustment_after_minutes is not None
            and rules.stop_adjustment_pct is not None
            and not position.stop_tightened
            and held >= rules.stop_adjustment_after_minutes * 60
        ):
            tightened = position.entry_price * (1 + rules.stop_adjustment_pct / 100)
            position.stop_tightened = True
            if position.stop_loss is None or tightened > position.stop_loss:
                logger.info(
                    f"Tightening stop for {position.id} after {held / 60:.0f}m: "
                    f"{position.stop_loss} -> {tightened:.6f}"
                )
                position.stop_loss = tightened
        return None

    @staticmethod
    def _check_volatility(
        position: Position,
        rules: ResolvedExitRules,
        prices: Sequence[float],
    ) -> Optional[str]:
        if not rules.volatility_enabled:
            return None
        lookback = rules.volatility_lookback
        if len(prices) < 2 or len(prices) < lookback:
            return None

        returns: List[float] = []
        for i in range(max(1, len(prices) - lookback + 1), len(prices)):
            previous = prices[i - 1]
            if previous:
                returns.append((prices[i] - previous) / previous)
        if not returns:
            return None

        mean = sum(returns) / len(returns)
        std_dev = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
        threshold = std_dev * rules.volatility_multiplier

        previous_price = prices[-2]
        if not previous_price:
            return None
        current_return = (position.current_price - previous_price) / previous_price
        if abs(current_return) <= threshold:
            return None

        # Only adverse spikes; skip unless already in profit or the spike is severe
        severe = abs(current_return) > threshold * rules.volatility_severe_factor
        if current_return < 0 and (position.pnl_pct > rules.volatility_profit_gate_pct or severe):
            return (
                f"volatility spike ({current_return * 100:.2f}%, "
                f"threshold: {threshold * 100:.2f}%)"
            )
        logger.debug(
            f"Volatility spike on {position.id} ignored: return {current_return * 100:.2f}%, "
            f"pnl {position.pnl_pct:.2f}%"
        )
        return None


__all__ = ["ExitRuleEngine"]
