import logging
import threading
import time
from typing import Iterable, Optional

from posthog_core.errors import ValidationError
from posthog_core.storage import PersistedState
from posthog_core.types import PersistedProperty
from posthog_core.utils import new_uuid, stringify_id

SESSION_EXPIRATION_TIME_SECONDS = 30 * 60
SESSION_MAX_LENGTH_SECONDS = 24 * 60 * 60


class IdentityManager(object):
    """
    Owns who the current user is: distinct id, anonymous id, opt-out state and session.

    Everything lives in the persisted store so identity survives restarts.
    """

    log = logging.getLogger("posthog")

    def __init__(
        self,
        state: PersistedState,
        default_opt_in=True,
        session_expiration_time_seconds=SESSION_EXPIRATION_TIME_SECONDS,
    ):
        self.state = state
        self.default_opt_in = default_opt_in
        self.session_expiration_time_seconds = session_expiration_time_seconds
        self._lock = threading.RLock()

    def get_anonymous_id(self) -> str:
        with self._lock:
            anonymous_id = self.state.get(PersistedProperty.ANONYMOUS_ID)
            if not anonymous_id:
                anonymous_id = new_uuid()
                self.state.set(PersistedProperty.ANONYMOUS_ID, anonymous_id)
            return anonymous_id

    def get_distinct_id(self) -> str:
        return self.state.get(PersistedProperty.DISTINCT_ID) or self.get_anonymous_id()

    def identify(self, distinct_id) -> Optional[str]:
        """
        Switch to `distinct_id`.

        Returns the distinct id that was active before the call, or None when
        `distinct_id` is already the current one, in which case nothing is written.

        Raises:
            ValidationError: if `distinct_id` is missing or empty.
        """
        new_id = stringify_id(distinct_id)
        if not new_id:
            raise ValidationError("identify requires a non-empty distinct_id")

        with self._lock:
            previous_id = self.get_distinct_id()
            if new_id == previous_id:
                self.log.debug("distinct_id %s is already identified, skipping", new_id)
                return None
            self.state.set(PersistedProperty.DISTINCT_ID, new_id)
            return previous_id

    def set_bootstrap_ids(self, distinct_id=None, is_identified_id=False) -> None:
        """Seed ids from bootstrap options without overwriting anything already persisted."""
        distinct_id = stringify_id(distinct_id)
        if not distinct_id:
            return
        with self._lock:
            key = (
                PersistedProperty.DISTINCT_ID
                if is_identified_id
                else PersistedProperty.ANONYMOUS_ID
            )
            if not self.state.get(key):
                self.state.set(key, distinct_id)

    @property
    def opted_out(self) -> bool:
        opted_out = self.state.get(PersistedProperty.OPTED_OUT)
        if opted_out is None:
            return not self.default_opt_in
        return bool(opted_out)

    def opt_in(self) -> None:
        self.state.set(PersistedProperty.OPTED_OUT, False)

    def opt_out(self) -> None:
        self.state.set(PersistedProperty.OPTED_OUT, True)

    def get_session_id(self) -> str:
        """Current session id, rotated after inactivity or once the session is too long."""
        with self._lock:
            session_id = self.state.get(PersistedProperty.SESSION_ID)
            last_timestamp = self.state.get(PersistedProperty.SESSION_LAST_TIMESTAMP) or 0
            start_timestamp = self.state.get(PersistedProperty.SESSION_START_TIMESTAMP) or 0
            now = time.time()
            if (
                not session_id
                or now - last_timestamp > self.session_expiration_time_seconds
                or now - start_timestamp > SESSION_MAX_LENGTH_SECONDS
            ):
                session_id = new_uuid()
                self.state.set(PersistedProperty.SESSION_ID, session_id)
                self.state.set(PersistedProperty.SESSION_START_TIMESTAMP, now)
            self.state.set(PersistedProperty.SESSION_LAST_TIMESTAMP, now)
            return session_id

    def reset_session_id(self) -> None:
        with self._lock:
            self.state.set(PersistedProperty.SESSION_ID, None)
            self.state.set(PersistedProperty.SESSION_LAST_TIMESTAMP, None)
            self.state.set(PersistedProperty.SESSION_START_TIMESTAMP, None)

    def reset(self, properties_to_keep: Iterable[PersistedProperty] = ()) -> None:
        """Forget everything persisted except the event queue and `properties_to_keep`."""
        keep = {PersistedProperty.QUEUE, *properties_to_keep}
        with self._lock:
            for key in PersistedProperty:
                if key not in keep:
                    self.state.set(key, None)
