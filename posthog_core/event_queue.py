import copy
import logging
import threading
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from posthog_core.storage import PersistedState
from posthog_core.types import PersistedProperty

DEFAULT_MAX_QUEUE_SIZE = 1000


class EventQueue(object):
    """
    Ordered list of pending event envelopes, written through to the persisted store.

    Items are kept as `{"message": envelope}` so the stored format stays
    compatible with other clients sharing the same store layout. Envelopes
    are only ever removed by uuid, which keeps removal correct while new
    events are appended during a network round trip.
    """

    log = logging.getLogger("posthog")

    def __init__(self, state: PersistedState, max_queue_size=DEFAULT_MAX_QUEUE_SIZE):
        self.state = state
        self.max_queue_size = max(1, max_queue_size)
        self._lock = threading.RLock()
        self._items: List[Dict[str, Any]] = list(
            state.get(PersistedProperty.QUEUE) or []
        )

    def __len__(self):
        with self._lock:
            return len(self._items)

    def enqueue(self, message: Dict[str, Any]) -> int:
        """Append `message`, returns the queue length afterwards."""
        with self._lock:
            if len(self._items) >= self.max_queue_size:
                dropped = self._items.pop(0)
                self.log.info(
                    "Queue is full, the oldest event is dropped. (%s)",
                    dropped.get("message", {}).get("uuid"),
                )
            self._items.append({"message": message})
            self._persist()
            return len(self._items)

    def peek(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return up to `limit` messages from the head of the queue without removing them."""
        with self._lock:
            items = self._items if limit is None else self._items[:limit]
            return [copy.deepcopy(item["message"]) for item in items]

    def remove(self, messages: Iterable[Dict[str, Any]]) -> None:
        """
        Remove the given messages, matched by uuid.

        Each message removes one queued item, the oldest with its uuid, so a
        later event reusing a uuid stays queued.
        """
        to_remove = Counter(message.get("uuid") for message in messages)
        with self._lock:
            kept = []
            for item in self._items:
                uuid = item.get("message", {}).get("uuid")
                if to_remove[uuid] > 0:
                    to_remove[uuid] -= 1
                else:
                    kept.append(item)
            self._items = kept
            self._persist()

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._persist()

    def _persist(self):
        self.state.set(PersistedProperty.QUEUE, self._items)
