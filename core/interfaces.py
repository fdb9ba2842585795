"""
Collaborator interfaces consumed by the exit engine.

PriceSource and OrderSink are the only ways the engine touches the market.
Implementations live outside core/ (see infra/price_feed.py and infra/dry_run.py)
so the decision logic never depends on a specific API or DEX.
"""

from abc import ABC, abstractmethod
from typing import Optional

from core.models import OrderResult, SellInstruction


class PriceSource(ABC):
    """Returns the current price for a token."""

    @abstractmethod
    def get_price(self, token_address: str) -> Optional[float]:
        """
        Fetch the latest price.

        Returns None (or raises) when no trustworthy price is available;
        the monitor treats both as a transient failure for this cycle.
        """


class OrderSink(ABC):
    """Accepts sell instructions and reports the fill."""

    @abstractmethod
    def execute_order(self, instruction: SellInstruction) -> OrderResult:
        """
        Submit a sell. Must enforce its own timeout; the monitor does not add one.
        """


__all__ = ["OrderSink", "PriceSource"]
