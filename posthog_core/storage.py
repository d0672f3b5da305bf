"""
Persisted storage for client state.

The client keeps identity, the pending event queue and the flag cache in a
key/value store that only deals in strings. Platforms plug in their own
store (a file, a cookie jar, a database row) by implementing the
`PersistedStore` protocol:

    class RedisStore:
        def __init__(self, redis_client, prefix="posthog:"):
            self.redis = redis_client
            self.prefix = prefix

        def get_item(self, key):
            value = self.redis.get(self.prefix + key)
            return value.decode() if value is not None else None

        def set_item(self, key, value):
            self.redis.set(self.prefix + key, value)

        def remove_item(self, key):
            self.redis.delete(self.prefix + key)

A store is single writer per key: two clients sharing one store will
overwrite each other's queue.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

from posthog_core.types import PersistedProperty
from posthog_core.utils import DatetimeSerializer

log = logging.getLogger("posthog")


@runtime_checkable
class PersistedStore(Protocol):
    """Key/value store holding JSON strings."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process local store, state is lost when the process exits."""

    def __init__(self):
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class PersistedState:
    """JSON codec on top of a `PersistedStore`."""

    def __init__(self, store: PersistedStore):
        self.store = store

    def get(self, key: Union[PersistedProperty, str], default: Any = None) -> Any:
        raw = self.store.get_item(_key(key))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("Could not decode persisted property %s, ignoring it", _key(key))
            return default

    def set(self, key: Union[PersistedProperty, str], value: Any) -> None:
        """Store `value` under `key`; `None` removes the key."""
        if value is None:
            self.store.remove_item(_key(key))
            return
        self.store.set_item(_key(key), json.dumps(value, cls=DatetimeSerializer))


def _key(key: Union[PersistedProperty, str]) -> str:
    return key.value if isinstance(key, PersistedProperty) else key
