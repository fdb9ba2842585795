"""
Test helpers for exit engine tests.

Deterministic stand-ins for the external collaborators (PriceSource, OrderSink)
and a controllable clock, so cycles can be driven directly without sleeping.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

from core.interfaces import OrderSink, PriceSource
from core.models import OrderResult, Position, SellInstruction
from tools.config_validator import RiskConfig


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedPriceSource(PriceSource):
    """
    Returns preset prices per token.

    A value may be a float, None (no price) or an Exception instance (raised).
    """

    def __init__(self, prices: Optional[Dict[str, Union[float, None, Exception]]] = None):
        self.prices: Dict[str, Union[float, None, Exception]] = dict(prices or {})
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def get_price(self, token_address: str) -> Optional[float]:
        with self._lock:
            self.calls.append(token_address)
        value = self.prices.get(token_address)
        if isinstance(value, Exception):
            raise value
        return value


class RecordingOrderSink(OrderSink):
    """Records every instruction; fills at instruction price unless told otherwise."""

    def __init__(self, success: bool = True, proceeds: Optional[int] = None, error: Optional[Exception] = None,
                 delay_event: Optional[threading.Event] = None):
        self.success = success
        self.proceeds = proceeds
        self.error = error
        self.delay_event = delay_event
        self.instructions: List[SellInstruction] = []
        self._lock = threading.Lock()

    def execute_order(self, instruction: SellInstruction) -> OrderResult:
        with self._lock:
            self.instructions.append(instruction)
        if self.delay_event is not None:
            self.delay_event.wait(5)
        if self.error is not None:
            raise self.error
        if not self.success:
            return OrderResult(success=False, error="rejected")
        proceeds = self.proceeds
        if proceeds is None:
            proceeds = int(instruction.quantity * instruction.price)
        return OrderResult(success=True, filled_quantity=instruction.quantity, proceeds=proceeds)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.instructions)


def make_position(
    token: str = "TokenMint111",
    symbol: str = "TKN",
    entry_price: float = 100.0,
    quantity: int = 10,
    cost: Optional[int] = None,
    pattern_tag: str = "default",
    entry_timestamp: Optional[datetime] = None,
    **kwargs,
) -> Position:
    return Position(
        token_address=token,
        token_symbol=symbol,
        entry_price=entry_price,
        quantity=quantity,
        initial_cost_basis=cost if cost is not None else int(entry_price * quantity),
        pattern_tag=pattern_tag,
        entry_timestamp=entry_timestamp or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        **kwargs,
    )


def risk_config(**overrides) -> RiskConfig:
    values = {
        "initial_balance_lamports": 1_000_000,
        "max_positions": 3,
        "max_position_size_lamports": 100_000,
    }
    values.update(overrides)
    return RiskConfig(**values)


def alert_texts(alert_mock) -> List[str]:
    """'title message' for every notify() call on a MagicMock AlertService."""
    return [
        f"{c.kwargs.get('title', '')} {c.kwargs.get('message', '')}"
        for c in alert_mock.notify.call_args_list
    ]
