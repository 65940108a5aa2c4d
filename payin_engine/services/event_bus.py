"""In-process publish/subscribe channel for engine state changes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import queue
from threading import Lock
from typing import Any, Callable, Dict, FrozenSet, List, Optional


logger = logging.getLogger(__name__)

SELECTION_MADE = "selection.made"
OUTCOME_APPLIED = "outcome.applied"
CIRCUIT_TRANSITION = "circuit.transition"
ALERT_RAISED = "alert.raised"
ALERT_ACKNOWLEDGED = "alert.acknowledged"
ENDPOINT_UPDATED = "endpoint.updated"


@dataclass(frozen=True)
class EngineEvent:
    """One state change pushed to subscribers."""

    event_type: str
    payload: Dict[str, Any]
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.event_type, "at": self.at.isoformat(), "payload": self.payload}


class Subscription:
    """Bounded, thread-safe queue of events for one consumer."""

    def __init__(self, bus: "EngineEventBus", event_types: Optional[FrozenSet[str]], maxsize: int) -> None:
        self._bus = bus
        self._event_types = event_types
        self._queue: "queue.Queue[EngineEvent]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event_type: str) -> bool:
        return self._event_types is None or event_type in self._event_types

    def offer(self, event: EngineEvent) -> None:
        """Enqueue ``event``, discarding the oldest one when the consumer lags."""
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    continue

    def get(self, timeout: Optional[float] = None) -> Optional[EngineEvent]:
        """Return the next event, or ``None`` if none arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[EngineEvent]:
        """Return every queued event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EngineEventBus:
    """Fan-out of engine events to queue subscribers and synchronous listeners."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Callable[[EngineEvent], None]] = []

    def subscribe(self, event_types: Optional[List[str]] = None, maxsize: int = 1000) -> Subscription:
        subscription = Subscription(self, frozenset(event_types) if event_types else None, max(1, maxsize))
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[EngineEvent], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> EngineEvent:
        event = EngineEvent(event_type=event_type, payload=dict(payload))
        with self._lock:
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)
        for subscription in subscriptions:
            if subscription.wants(event_type):
                subscription.offer(event)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Engine event listener failed event_type=%s", event_type)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
