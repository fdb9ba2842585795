"""
Explicit event channel for observers of the exit engine.

Components publish onto a bounded queue instead of registering global
listeners; consumers (notifiers, dashboards, tests) drain it at their own pace.
When the queue is full the oldest event is dropped.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.models import utcnow

logger = logging.getLogger(__name__)


class EventKind(Enum):
    POSITION_ADDED = "positionAdded"
    POSITION_REMOVED = "positionRemoved"
    POSITION_CLOSED = "positionClosed"
    CIRCUIT_BREAKER = "circuitBreaker"
    CIRCUIT_BREAKER_RESET = "circuitBreakerReset"
    EMERGENCY_STOP = "emergencyStop"
    EMERGENCY_STOP_RESET = "emergencyStopReset"


@dataclass(frozen=True)
class MonitorEvent:
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


class EventChannel:
    """Bounded FIFO of MonitorEvents, safe to publish from any thread."""

    def __init__(self, maxsize: int = 1000):
        self._queue: "queue.Queue[MonitorEvent]" = queue.Queue(maxsize=maxsize)
        self._put_lock = threading.Lock()
        self.dropped = 0

    def publish(self, kind: EventKind, **payload: Any) -> MonitorEvent:
        event = MonitorEvent(kind=kind, payload=payload)
        with self._put_lock:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
                self.dropped += 1
                logger.debug("Event channel full, dropped oldest event (total dropped=%d)", self.dropped)
                self._queue.put_nowait(event)
        return event

    def get(self, timeout: Optional[float] = None) -> Optional[MonitorEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, kind: Optional[EventKind] = None) -> List[MonitorEvent]:
        """Remove and return all queued events, optionally keeping only one kind."""
        events: List[MonitorEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        if kind is not None:
            events = [e for e in events if e.kind == kind]
        return events

    def __len__(self) -> int:
        return self._queue.qsize()


__all__ = ["EventChannel", "EventKind", "MonitorEvent"]
