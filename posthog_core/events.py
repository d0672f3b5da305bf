import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger("posthog")

WILDCARD = "*"


class EventEmitter(object):
    """
    Minimal in-process event bus.

    Listeners registered for `"*"` receive every event as `(event, payload)`,
    other listeners receive only the payload. A failing listener is logged
    and never interrupts the emitter.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Subscribe `callback` to `event`, returns a function that unsubscribes it."""
        with self._lock:
            self._listeners[event].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners[event]:
                    self._listeners[event].remove(callback)

        return unsubscribe

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
            wildcard = list(self._listeners.get(WILDCARD, []))

        for listener in listeners:
            self._call(listener, payload)
        for listener in wildcard:
            self._call(listener, event, payload)

    def _call(self, listener, *args):
        try:
            listener(*args)
        except Exception as e:
            log.exception(f"Error in event listener: {e}")
