"""
Minimal synchronous subscribe/notify emitter.

Listeners run in registration order on the emitting task. A listener that
raises is logged and skipped so the emitter's own loop keeps going.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class EventEmitter:
    """Named-event emitter used by NetworkMonitor and SnipeEngine."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        def _wrapper(payload: Any) -> None:
            self.off(event, _wrapper)
            listener(payload)

        _wrapper.__wrapped__ = listener  # type: ignore[attr-defined]
        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> None:
        bucket = self._listeners.get(event)
        if not bucket:
            return
        for registered in list(bucket):
            # Bound methods are recreated on each attribute access, so compare by equality
            if registered == listener or getattr(registered, "__wrapped__", None) == listener:
                bucket.remove(registered)
                break

    def remove_all_listeners(self, event: str = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, payload: Any = None) -> int:
        """Notify listeners of ``event``. Returns how many were called."""
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:
                logger.exception("Listener for %s failed: %s", event, exc)
        return len(listeners)
