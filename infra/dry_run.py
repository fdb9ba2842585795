"""
Simulated order sink for DRY_RUN mode.

Fills every sell immediately at the instruction price minus a fixed slippage,
so the monitor, risk guard and persistence can run end to end without a DEX.
Prices are lamports per token base unit, so proceeds = quantity * price.
"""

import logging
import threading
from decimal import ROUND_FLOOR, Decimal
from typing import List

from core.interfaces import OrderSink
from core.models import OrderResult, SellInstruction

logger = logging.getLogger(__name__)

BPS = Decimal(10_000)


class DryRunOrderSink(OrderSink):
    """Always-filling sink that logs the simulated fill."""

    def __init__(self, slippage_bps: float = 100.0):
        if slippage_bps < 0 or slippage_bps >= 10_000:
            raise ValueError(f"slippage_bps must be in [0, 10000), got {slippage_bps}")
        self.slippage_bps = Decimal(str(slippage_bps))
        self._fills: List[SellInstruction] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, execution_config) -> "DryRunOrderSink":
        return cls(slippage_bps=execution_config.slippage_bps)

    def execute_order(self, instruction: SellInstruction) -> OrderResult:
        if instruction.quantity <= 0 or instruction.price <= 0:
            logger.warning(f"DRY_RUN rejecting sell {instruction}")
            return OrderResult(success=False, error="invalid quantity or price")

        gross = Decimal(instruction.quantity) * Decimal(str(instruction.price))
        net = gross * (BPS - self.slippage_bps) / BPS
        proceeds = int(net.to_integral_value(rounding=ROUND_FLOOR))

        with self._lock:
            self._fills.append(instruction)
        logger.info(
            f"DRY_RUN sell {instruction.quantity} of {instruction.token_address} @ {instruction.price:.9f} "
            f"-> {proceeds} lamports (slippage {self.slippage_bps}bps, reason: {instruction.reason})"
        )
        return OrderResult(success=True, filled_quantity=instruction.quantity, proceeds=proceeds)

    @property
    def fills(self) -> List[SellInstruction]:
        with self._lock:
            return list(self._fills)


__all__ = ["DryRunOrderSink"]
