"""
Core domain types: positions, trailing stops, sell instructions and fills.

Position lifecycle: OPEN → CLOSING → (CLOSED | OPEN)

A position enters CLOSING when an exit is dispatched, which blocks any second
exit attempt for the same id. A filled exit moves it to CLOSED (and the store
drops it); a failed exit moves it back to OPEN so the next analysis cycle can
retry. Quantities and settlement amounts are integers in the smallest unit
(token base units, lamports).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PositionStatus(Enum):
    """Position lifecycle states"""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


VALID_TRANSITIONS = {
    PositionStatus.OPEN: {PositionStatus.CLOSING},
    PositionStatus.CLOSING: {PositionStatus.CLOSED, PositionStatus.OPEN},
    PositionStatus.CLOSED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class TrailingStop:
    """Stop price that follows the highest price seen by a fixed percentage."""
    percent: float
    highest_price_seen: float
    stop_price: float

    @classmethod
    def activate(cls, percent: float, price: float) -> "TrailingStop":
        return cls(percent=percent, highest_price_seen=price, stop_price=price * (1 - percent / 100))

    def observe(self, price: float) -> bool:
        """Raise the high-water price (never lower it). Returns True when the stop moved."""
        if price > self.highest_price_seen:
            self.highest_price_seen = price
            self.stop_price = price * (1 - self.percent / 100)
            return True
        return False

    def to_dict(self) -> Dict[str, float]:
        return {
            "percent": self.percent,
            "highest_price_seen": self.highest_price_seen,
            "stop_price": self.stop_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrailingStop":
        return cls(
            percent=float(data["percent"]),
            highest_price_seen=float(data["highest_price_seen"]),
            stop_price=float(data["stop_price"]),
        )


# Fields fixed at creation; assignment after __init__ raises.
_IMMUTABLE_FIELDS = frozenset(
    {"id", "token_address", "entry_price", "entry_timestamp", "quantity", "initial_cost_basis"}
)


@dataclass(eq=True)
class Position:
    """
    One open trading position.

    entry_price, entry_timestamp, quantity and initial_cost_basis are immutable.
    current_price / last_update_timestamp are written by the price refresh cycle,
    stop levels by the exit rules, status by the monitor.
    """
    token_address: str
    token_symbol: str
    entry_price: float
    quantity: int
    initial_cost_basis: int
    entry_timestamp: datetime = field(default_factory=utcnow)
    pattern_tag: str = "default"
    id: str = ""
    current_price: Optional[float] = None
    last_update_timestamp: Optional[datetime] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[TrailingStop] = None
    stop_tightened: bool = False
    status: PositionStatus = PositionStatus.OPEN

    def __post_init__(self):
        if not self.token_address:
            raise ValueError("Position token_address is required")
        if self.entry_price is None or self.entry_price <= 0:
            raise ValueError(f"Position entry_price must be positive, got {self.entry_price}")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"Position quantity must be a positive integer, got {self.quantity!r}")
        if isinstance(self.initial_cost_basis, bool) or not isinstance(self.initial_cost_basis, int):
            raise ValueError(f"Position initial_cost_basis must be an integer, got {self.initial_cost_basis!r}")
        if self.entry_timestamp.tzinfo is None:
            object.__setattr__(self, "entry_timestamp", self.entry_timestamp.replace(tzinfo=timezone.utc))
        if not self.id:
            millis = int(self.entry_timestamp.timestamp() * 1000)
            object.__setattr__(self, "id", f"{self.token_address}-{millis}")
        if self.current_price is None:
            self.current_price = self.entry_price
        object.__setattr__(self, "_sealed", True)

    def __setattr__(self, name, value):
        if name in _IMMUTABLE_FIELDS and getattr(self, "_sealed", False):
            raise AttributeError(f"Position.{name} is immutable after creation")
        object.__setattr__(self, name, value)

    @property
    def label(self) -> str:
        return self.token_symbol or self.token_address

    @property
    def pnl_pct(self) -> float:
        """Unrealized P&L percent at the current price."""
        price = self.current_price if self.current_price is not None else self.entry_price
        return (price - self.entry_price) / self.entry_price * 100

    def holding_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.entry_timestamp).total_seconds()

    def transition(self, new_status: PositionStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.id}: {self.status.value} → {new_status.value}")
        logger.debug("Position %s: %s → %s", self.id, self.status.value, new_status.value)
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON persistence. Integers are written as strings to survive any JSON reader."""
        return {
            "id": self.id,
            "token_address": self.token_address,
            "token_symbol": self.token_symbol,
            "entry_price": self.entry_price,
            "entry_timestamp": self.entry_timestamp.isoformat(),
            "quantity": str(self.quantity),
            "initial_cost_basis": str(self.initial_cost_basis),
            "pattern_tag": self.pattern_tag,
            "current_price": self.current_price,
            "last_update_timestamp": (
                self.last_update_timestamp.isoformat() if self.last_update_timestamp else None
            ),
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "trailing_stop": self.trailing_stop.to_dict() if self.trailing_stop else None,
            "stop_tightened": self.stop_tightened,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        trailing = data.get("trailing_stop")
        return cls(
            id=data["id"],
            token_address=data["token_address"],
            token_symbol=data.get("token_symbol", ""),
            entry_price=float(data["entry_price"]),
            entry_timestamp=parse_timestamp(data["entry_timestamp"]),
            quantity=int(data["quantity"]),
            initial_cost_basis=int(data["initial_cost_basis"]),
            pattern_tag=data.get("pattern_tag", "default"),
            current_price=data.get("current_price"),
            last_update_timestamp=parse_timestamp(data.get("last_update_timestamp")),
            stop_loss=data.get("stop_loss"),
            take_profit=data.get("take_profit"),
            trailing_stop=TrailingStop.from_dict(trailing) if trailing else None,
            stop_tightened=bool(data.get("stop_tightened", False)),
            status=PositionStatus(data.get("status", PositionStatus.OPEN.value)),
        )


@dataclass(frozen=True)
class SellInstruction:
    """Instruction handed to the order sink to close a position."""
    token_address: str
    quantity: int
    price: float
    position_id: str = ""
    reason: str = ""


@dataclass
class OrderResult:
    """Outcome reported by the order sink. proceeds are lamports received."""
    success: bool
    filled_quantity: Optional[int] = None
    proceeds: Optional[int] = None
    error: Optional[str] = None


__all__ = [
    "LAMPORTS_PER_SOL",
    "InvalidTransition",
    "OrderResult",
    "Position",
    "PositionStatus",
    "SellInstruction",
    "TrailingStop",
    "parse_timestamp",
    "utcnow",
]
