"""
Session events.

Processing stages publish strategy changes, quality updates and stage
progress through an EventEmitter; UIs and recorders subscribe to it instead
of polling the pipeline.
"""

import enum
import logging
import threading
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """Events published during a scanning session."""
    # Strategy controller: (TransitionEvent)
    STRATEGY_CHANGED = "strategy_changed"
    RECALIBRATION_REQUIRED = "recalibration_required"

    # Quality estimation: ({source: QualityReport})
    QUALITY_UPDATED = "quality_updated"

    # Pipeline stages: (name), (name, elapsed), (name, exception)
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"

    # Session lifecycle: (session_id)
    SESSION_RESTARTED = "session_restarted"


class EventEmitter:
    """
    Thread-safe publish/subscribe hub.

    Callbacks run synchronously on the emitting thread, in subscription
    order. The subscriber list is copied before dispatch, so callbacks may
    subscribe or unsubscribe while an event is being delivered. A callback
    that raises is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[Callable]] = {event: [] for event in EventType}
        self._lock = threading.Lock()

    def on(self, event_type: EventType, callback: Callable) -> None:
        with self._lock:
            self._listeners.setdefault(event_type, []).append(callback)

    def once(self, event_type: EventType, callback: Callable) -> Callable:
        """
        Subscribe for a single delivery.

        Returns:
            The wrapper actually registered, usable with off()
        """
        def wrapper(*args, **kwargs):
            self.off(event_type, wrapper)
            callback(*args, **kwargs)

        self.on(event_type, wrapper)
        return wrapper

    def off(self, event_type: EventType, callback: Callable) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

    def clear(self, event_type: Optional[EventType] = None) -> None:
        """Drop the subscribers of one event type, or of all of them."""
        with self._lock:
            for key in ([event_type] if event_type is not None else list(self._listeners)):
                self._listeners[key] = []

    def listener_count(self, event_type: EventType) -> int:
        with self._lock:
            return len(self._listeners.get(event_type, []))

    def emit(self, event_type: EventType, *args, **kwargs) -> None:
        """
        Deliver an event to every current subscriber.

        Args:
            event_type: Event type
            *args, **kwargs: Payload passed to each callback
        """
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))

        for callback in listeners:
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Listener {getattr(callback, '__name__', callback)!r} failed on "
                             f"{event_type.value}: {e}")
