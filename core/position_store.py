"""
In-memory table of open positions plus per-token price history.

Locking:
- ``_lock`` guards the collection (add/remove/iteration) and the history map.
- each position has its own RLock (``position_lock``) serializing writes to its
  price, trailing stop and status. Callers take the position lock before the
  collection lock, never the other way round.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import Deque, Dict, Iterator, List, Optional

from core.models import Position, PositionStatus, utcnow

logger = logging.getLogger(__name__)


class PositionStore:
    """Open positions keyed by id, with one bounded price buffer per token."""

    def __init__(self, history_size: int = 10):
        if history_size < 2:
            raise ValueError(f"history_size must be >= 2, got {history_size}")
        self.history_size = history_size
        self._positions: Dict[str, Position] = {}
        self._history: Dict[str, Deque[float]] = {}
        self._position_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.RLock()

    # ---- collection ----

    def add(self, position: Position) -> None:
        with self._lock:
            if position.id in self._positions:
                raise ValueError(f"Position {position.id} already tracked")
            self._positions[position.id] = position
            self._position_locks[position.id] = threading.RLock()
            history = self._history.get(position.token_address)
            if history is None:
                history = deque(maxlen=self.history_size)
                self._history[position.token_address] = history
            if not history:
                history.append(position.current_price or position.entry_price)
        logger.debug("Tracking %s (%s)", position.id, position.label)

    def remove(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.pop(position_id, None)
            self._position_locks.pop(position_id, None)
            if position is None:
                return None
            still_held = any(p.token_address == position.token_address for p in self._positions.values())
            if not still_held:
                self._history.pop(position.token_address, None)
        logger.debug("Dropped %s (%s)", position_id, position.label)
        return position

    def get(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    def all(self) -> List[Position]:
        """Snapshot of tracked positions; safe to iterate while others add/remove."""
        with self._lock:
            return list(self._positions.values())

    def open_positions(self) -> List[Position]:
        return [p for p in self.all() if p.status == PositionStatus.OPEN]

    def tokens(self) -> List[str]:
        """Distinct token addresses of open positions."""
        seen: Dict[str, None] = {}
        for position in self.open_positions():
            seen.setdefault(position.token_address, None)
        return list(seen)

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)

    def __contains__(self, position_id: str) -> bool:
        with self._lock:
            return position_id in self._positions

    # ---- per-position serialization ----

    @contextmanager
    def position_lock(self, position_id: str) -> Iterator[Optional[Position]]:
        """Hold the position's lock; yields None if the position is gone."""
        with self._lock:
            lock = self._position_locks.get(position_id)
        if lock is None:
            yield None
            return
        with lock:
            yield self.get(position_id)

    # ---- prices ----

    def update_price(self, position_id: str, price: float, timestamp: Optional[datetime] = None) -> bool:
        """
        Record a fresh price for one position.

        Appends to the token's history and ratchets an active trailing stop.
        Returns False if the position is unknown.
        """
        with self.position_lock(position_id) as position:
            if position is None:
                return False
            self._append_history(position.token_address, price)
            self._apply_price(position, price, timestamp or utcnow())
            return True

    def update_token_price(self, token_address: str, price: float, timestamp: Optional[datetime] = None) -> int:
        """
        Record one fetched price for every OPEN position on ``token_address``.

        History gets a single sample regardless of how many positions hold the token.
        Positions with an exit in flight keep the price their sell was sent at.
        Returns the number of positions updated.
        """
        timestamp = timestamp or utcnow()
        self._append_history(token_address, price)
        updated = 0
        for position in self.all():
            if position.token_address != token_address:
                continue
            with self.position_lock(position.id) as locked:
                if locked is None or locked.status != PositionStatus.OPEN:
                    continue
                self._apply_price(locked, price, timestamp)
                updated += 1
        return updated

    def price_history(self, token_address: str) -> List[float]:
        with self._lock:
            return list(self._history.get(token_address, ()))

    def _append_history(self, token_address: str, price: float) -> None:
        with self._lock:
            history = self._history.get(token_address)
            if history is None:
                history = deque(maxlen=self.history_size)
                self._history[token_address] = history
            history.append(price)

    @staticmethod
    def _apply_price(position: Position, price: float, timestamp: datetime) -> None:
        position.current_price = price
        position.last_update_timestamp = timestamp
        if position.trailing_stop and position.trailing_stop.observe(price):
            logger.info(
                "Trailing stop raised for %s: high %.6f, stop %.6f",
                position.id, position.trailing_stop.highest_price_seen, position.trailing_stop.stop_price,
            )

    # ---- exit state machine ----

    def begin_exit(self, position_id: str) -> Optional[Position]:
        """
        Atomically move OPEN → CLOSING.

        Returns the position if this caller won the exit, None if it is gone or
        another exit is already in flight.
        """
        with self.position_lock(position_id) as position:
            if position is None or position.status != PositionStatus.OPEN:
                return None
            position.transition(PositionStatus.CLOSING)
            return position

    def finish_exit(self, position_id: str, success: bool) -> Optional[Position]:
        """
        Resolve an in-flight exit: CLOSING → CLOSED (and drop it) or back to OPEN.
        """
        with self.position_lock(position_id) as position:
            if position is None or position.status != PositionStatus.CLOSING:
                return None
            if success:
                position.transition(PositionStatus.CLOSED)
            else:
                position.transition(PositionStatus.OPEN)
                return position
        self.remove(position_id)
        return position
