import atexit
import logging
import threading
import time
from threading import Thread
from typing import Any, Callable, Dict, Iterable, Optional

from typing_extensions import Unpack

from posthog_core.args import ID_TYPES, BootstrapArgs, OptionalCaptureArgs
from posthog_core.consumer import DEFAULT_MAX_BATCH_SIZE, Consumer, FlushEngine
from posthog_core.errors import NetworkError, ValidationError
from posthog_core.event_queue import DEFAULT_MAX_QUEUE_SIZE, EventQueue
from posthog_core.events import EventEmitter
from posthog_core.feature_flags import FlagsResolver, remote_config_source
from posthog_core.identity import SESSION_EXPIRATION_TIME_SECONDS, IdentityManager
from posthog_core.request import RequestsTransport, Transport, determine_server_host
from posthog_core.storage import MemoryStorage, PersistedState, PersistedStore
from posthog_core.types import (
    FeatureFlag,
    FlagsAndPayloads,
    FlagsResponse,
    FlagValue,
    PersistedProperty,
    RemoteConfigSource,
    flags_from_values_and_payloads,
    flags_to_storage,
    normalize_flags_response,
    to_flags_and_payloads,
    to_values,
)
from posthog_core.utils import (
    clean,
    merge_group_properties,
    new_uuid,
    stringify_id,
    system_context,
    to_iso_timestamp,
)
from posthog_core.version import VERSION

LIBRARY_ID = "posthog-core-python"

# keys of identify() properties that are never sent as person properties
RESERVED_IDENTIFY_KEYS = ("$set", "$set_once", "$groups")

OPTED_OUT_MESSAGE = (
    "Library is disabled. Not sending event. To re-enable, call posthog.opt_in()"
)


class Client(object):
    """
    Stateful PostHog client: identity, a persisted event queue and cached feature flags.

    Events are queued locally and sent in batches by a background thread, either
    every `flush_interval` seconds or as soon as `flush_at` events are waiting.
    Feature flags are evaluated remotely and cached, so flag reads never block.

    Examples:
        ```python
        from posthog_core import PostHogCore
        posthog = PostHogCore('<ph_project_api_key>', host='<ph_client_api_host>')
        posthog.identify('user-123', {'email': 'max@example.com'})
        posthog.capture('movie played', {'title': 'Alien'})
        if posthog.is_feature_enabled('new-player'):
            ...
        posthog.shutdown()
        ```
    """

    log = logging.getLogger("posthog")

    def __init__(
        self,
        project_api_key: str,
        host=None,
        debug=False,
        storage: Optional[PersistedStore] = None,
        transport: Optional[Transport] = None,
        on_error=None,
        on_remote_config=None,
        flush_at=20,
        flush_interval=10,
        max_batch_size=DEFAULT_MAX_BATCH_SIZE,
        max_queue_size=DEFAULT_MAX_QUEUE_SIZE,
        gzip=False,
        fetch_retry_count=3,
        fetch_retry_delay=3.0,
        request_timeout=10,
        feature_flags_request_timeout=10,
        remote_config_request_timeout=3,
        disabled=False,
        disable_geoip=False,
        historical_migration=False,
        default_opt_in=True,
        send_feature_flag_event=True,
        preload_feature_flags=True,
        disable_remote_config=False,
        session_expiration_time_seconds=SESSION_EXPIRATION_TIME_SECONDS,
        bootstrap: Optional[BootstrapArgs] = None,
        custom_headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize a new PostHog client instance.

        Args:
            project_api_key: The project API key.
            host: The host to use for the client.
            debug: Whether to enable debug mode.
            storage: Where client state is persisted, in memory by default.
            transport: How HTTP requests are made, `requests` by default.
            on_error: Called with `(error, batch)` when a background flush fails.
            on_remote_config: Called once per configuration load with the config that was applied.

        Raises:
            ValidationError: if `project_api_key` is empty.
        """
        if not project_api_key:
            raise ValidationError("You must pass your PostHog project's api key.")

        # api_key: This should be the Team API Key (token), public
        self.api_key = project_api_key
        self.host = determine_server_host(host)
        self.on_error = on_error
        self.on_remote_config = on_remote_config
        self.disabled = disabled
        self.disable_geoip = disable_geoip
        self.flush_at = max(1, flush_at)
        self.send_feature_flag_event = send_feature_flag_event
        self.preload_feature_flags = preload_feature_flags
        self.disable_remote_config = disable_remote_config

        self.events = EventEmitter()
        self._debug_unsubscribe: Optional[Callable[[], None]] = None
        self.debug(debug)

        self.state = PersistedState(storage or MemoryStorage())
        self.identity = IdentityManager(
            self.state,
            default_opt_in=default_opt_in,
            session_expiration_time_seconds=session_expiration_time_seconds,
        )
        self.queue = EventQueue(self.state, max_queue_size=max_queue_size)
        self.transport = transport or RequestsTransport(
            gzip=gzip, timeout=request_timeout
        )
        self.flush_engine = FlushEngine(
            self.queue,
            self.transport,
            self.api_key,
            host=self.host,
            max_batch_size=max_batch_size,
            retries=fetch_retry_count,
            retry_delay=fetch_retry_delay,
            timeout=request_timeout,
            historical_migration=historical_migration,
            events=self.events,
            is_opted_out=lambda: self.opted_out,
            headers=custom_headers,
        )
        self.flags_resolver = FlagsResolver(
            self.transport,
            self.api_key,
            host=self.host,
            timeout=feature_flags_request_timeout,
            remote_config_timeout=remote_config_request_timeout,
            events=self.events,
            headers=custom_headers,
        )

        self.session_props: Dict[str, Any] = {}
        self._props_lock = threading.RLock()
        self._flag_calls_reported: set = set()
        self._flag_calls_lock = threading.Lock()
        self._flags_load_lock = threading.Lock()
        self._tasks: set = set()
        self._tasks_lock = threading.Lock()
        self._shutting_down = False

        self._setup_bootstrap(bootstrap)

        self.consumer = None
        if disabled:
            return

        # On program exit, allow the consumer thread to exit cleanly.
        # This prevents exceptions and a messy shutdown when the
        # interpreter is destroyed before the daemon thread finishes
        # execution. However, it is *not* the same as flushing the queue!
        # To guarantee all messages have been delivered, you'll still need
        # to call shutdown().
        atexit.register(self.join)
        self.consumer = Consumer(
            self.flush_engine, flush_interval=flush_interval, on_error=on_error
        )
        self.consumer.start()

        if not disable_remote_config:
            self._run_in_background(self.reload_remote_config)
        elif preload_feature_flags:
            # no remote config to wait for: this load is the bootstrap
            self._run_in_background(self._load_flags, RemoteConfigSource.FLAGS)

    # Identity

    def get_distinct_id(self) -> str:
        return self.identity.get_distinct_id()

    def get_anonymous_id(self) -> str:
        return self.identity.get_anonymous_id()

    def get_session_id(self) -> str:
        return self.identity.get_session_id()

    def reset_session_id(self) -> None:
        self.identity.reset_session_id()

    @property
    def opted_out(self) -> bool:
        return self.identity.opted_out

    def opt_in(self) -> None:
        self.identity.opt_in()

    def opt_out(self) -> None:
        """Stop queueing and sending events until `opt_in()` is called. The choice is persisted."""
        self.identity.opt_out()

    def identify(
        self,
        distinct_id: ID_TYPES,
        properties: Optional[Dict[str, Any]] = None,
        **kwargs: Unpack[OptionalCaptureArgs],
    ) -> Optional[str]:
        """
        Identify the current user, linking the events captured so far to `distinct_id`.

        Properties are set on the person: pass `$set` and `$set_once` explicitly,
        otherwise every property is treated as `$set`.

        Args:
            distinct_id: The id of the user in your system.
            properties: Person properties, optionally split in `$set` and `$set_once`.

        Returns:
            The uuid of the `$identify` event, or None when `distinct_id` is
            already the current distinct id or nothing was queued.

        Raises:
            ValidationError: if `distinct_id` is empty.

        Examples:
            ```python
            posthog.identify('user-123', {'$set': {'plan': 'pro'}, '$set_once': {'signup': 'ads'}})
            ```

        Category:
            Identification
        """
        properties = dict(properties or {})
        previous_id = self.identity.identify(distinct_id)
        if previous_id is None:
            return None

        if properties.get("$groups"):
            self.groups(properties["$groups"])

        set_once = properties.get("$set_once")
        if "$set" in properties:
            user_props = properties["$set"]
        else:
            user_props = {
                key: value
                for key, value in properties.items()
                if key not in RESERVED_IDENTIFY_KEYS
            }

        self._reload_flags_in_background()

        if not self._can_enqueue("identify"):
            return None

        event_properties: Dict[str, Any] = {"$anon_distinct_id": previous_id}
        if user_props:
            event_properties["$set"] = user_props
        if set_once:
            event_properties["$set_once"] = set_once

        msg = {
            "distinct_id": self.get_distinct_id(),
            "event": "$identify",
            "properties": self._enrich_properties(event_properties),
        }
        return self._enqueue("identify", msg, kwargs)

    def alias(self, alias: str, **kwargs: Unpack[OptionalCaptureArgs]) -> Optional[str]:
        """
        Link `alias` to the current distinct id.

        Raises:
            ValidationError: if `alias` is empty.

        Category:
            Identification
        """
        alias = stringify_id(alias)
        if not alias:
            raise ValidationError("alias requires a non-empty alias")
        if not self._can_enqueue("alias"):
            return None

        distinct_id = self.get_distinct_id()
        properties = self._enrich_properties()
        properties["distinct_id"] = distinct_id
        properties["alias"] = alias

        msg = {
            "distinct_id": distinct_id,
            "event": "$create_alias",
            "properties": properties,
        }
        return self._enqueue("alias", msg, kwargs)

    def reset(self, properties_to_keep: Iterable[PersistedProperty] = ()) -> None:
        """
        Forget the current user: ids, super properties, session and cached flags.

        Queued events are kept and still sent. Flags are reloaded for the new
        anonymous user in the background.
        """
        with self._props_lock:
            self.session_props = {}
        with self._flag_calls_lock:
            self._flag_calls_reported = set()
        self.identity.reset(properties_to_keep)
        self._reload_flags_in_background()

    # Capture

    def capture(
        self,
        event: str,
        properties: Optional[Dict[str, Any]] = None,
        **kwargs: Unpack[OptionalCaptureArgs],
    ) -> Optional[str]:
        """
        Captures an event for the current user.

        Args:
            event: The event name to capture.
            properties: A dictionary of properties to include with the event.
            timestamp: The timestamp of the event.
            uuid: A unique identifier for the event.
            disable_geoip: Whether to disable GeoIP for this event.

        Returns:
            The uuid of the queued event, or None if nothing was queued.

        Examples:
            ```python
            posthog.capture('user_signed_up', {'login_type': 'email'})
            ```

        Category:
            Capture
        """
        if not event or not isinstance(event, str):
            raise ValidationError("capture requires an event name")
        if not self._can_enqueue("capture"):
            return None

        properties = dict(properties or {})
        if properties.get("$groups"):
            self.groups(properties["$groups"])

        properties = {**properties, **system_context()}
        msg = {
            "distinct_id": self.get_distinct_id(),
            "event": event,
            "properties": self._enrich_properties(
                properties, include_flags=event != "$feature_flag_called"
            ),
        }
        return self._enqueue("capture", msg, kwargs)

    def register(self, properties: Dict[str, Any]) -> None:
        """Set super properties, sent with every event and persisted."""
        with self._props_lock:
            self.state.set(PersistedProperty.PROPS, {**self._get_props(), **properties})

    def unregister(self, property: str) -> None:
        with self._props_lock:
            props = self._get_props()
            props.pop(property, None)
            self.state.set(PersistedProperty.PROPS, props)

    def register_for_session(self, properties: Dict[str, Any]) -> None:
        """Set properties sent with every event until the client is reset, not persisted."""
        with self._props_lock:
            self.session_props = {**self.session_props, **properties}

    def unregister_for_session(self, property: str) -> None:
        with self._props_lock:
            self.session_props.pop(property, None)

    # Groups

    def groups(self, groups: Dict[str, Any]) -> None:
        """Associate the current user with groups; flags are reloaded if any group changed."""
        with self._props_lock:
            existing_groups = self._get_props().get("$groups") or {}
            self.register({"$groups": {**existing_groups, **groups}})

        if any(existing_groups.get(key) != value for key, value in groups.items()):
            self._reload_flags_in_background()

    def group(
        self,
        group_type: str,
        group_key: ID_TYPES,
        properties: Optional[Dict[str, Any]] = None,
        **kwargs: Unpack[OptionalCaptureArgs],
    ) -> Optional[str]:
        """
        Add the current user to a group, and identify the group if `properties` are given.

        Category:
            Identification
        """
        self.groups({group_type: group_key})
        if properties:
            return self.group_identify(group_type, group_key, properties, **kwargs)
        return None

    def group_identify(
        self,
        group_type: str,
        group_key: ID_TYPES,
        properties: Optional[Dict[str, Any]] = None,
        **kwargs: Unpack[OptionalCaptureArgs],
    ) -> Optional[str]:
        """
        Identify a group and set its properties.

        Args:
            group_type: The type of group (e.g., 'company', 'team').
            group_key: The unique identifier for the group.
            properties: A dictionary of properties to set on the group.

        Examples:
            ```python
            posthog.group_identify('company', 'company_id_in_your_db', {
                'name': 'Awesome Inc.',
                'employees': 11
            })
            ```

        Category:
            Identification
        """
        group_key = stringify_id(group_key)
        if not group_type or not group_key:
            raise ValidationError("group_identify requires a group_type and a group_key")
        if not self._can_enqueue("groupidentify"):
            return None

        distinct_id = self.get_distinct_id() or f"${group_type}_{group_key}"
        msg = {
            "distinct_id": distinct_id,
            "event": "$groupidentify",
            "properties": {
                **self._enrich_properties(),
                "$group_type": group_type,
                "$group_key": group_key,
                "$group_set": properties or {},
            },
        }
        return self._enqueue("groupidentify", msg, kwargs)

    # Feature flag evaluation context

    def set_person_properties_for_flags(self, properties: Dict[str, Any]) -> None:
        """Person properties used when evaluating flags, merged into the ones already set."""
        with self._props_lock:
            existing = self.state.get(PersistedProperty.PERSON_PROPERTIES) or {}
            self.state.set(
                PersistedProperty.PERSON_PROPERTIES, {**existing, **properties}
            )

    def reset_person_properties_for_flags(self) -> None:
        self.state.set(PersistedProperty.PERSON_PROPERTIES, None)

    def set_group_properties_for_flags(
        self, properties: Dict[str, Dict[str, Any]]
    ) -> None:
        """
        Group properties used when evaluating flags, keyed by group type.

        Examples:
            ```python
            posthog.set_group_properties_for_flags({'company': {'plan': 'enterprise'}})
            ```
        """
        with self._props_lock:
            existing = self.state.get(PersistedProperty.GROUP_PROPERTIES) or {}
            self.state.set(
                PersistedProperty.GROUP_PROPERTIES,
                merge_group_properties(existing, properties),
            )

    def reset_group_properties_for_flags(self) -> None:
        self.state.set(PersistedProperty.GROUP_PROPERTIES, None)

    # Feature flags

    def get_feature_flag_details(self) -> Optional[FlagsResponse]:
        """
        The cached flags with local overrides applied, or None if flags were never loaded.

        Category:
            Feature Flags
        """
        details = self._get_known_flag_details()
        overrides = self.state.get(PersistedProperty.OVERRIDE_FEATURE_FLAGS)
        if not overrides:
            return details

        flags: Dict[str, FeatureFlag] = dict(details["flags"]) if details else {}
        for key, value in overrides.items():
            if not value:
                flags.pop(key, None)
            elif key in flags:
                flags[key] = flags[key].with_value(value)
            else:
                flags[key] = FeatureFlag.from_value_and_payload(key, value, None)

        return normalize_flags_response({**(details or {}), "flags": flags})

    def get_feature_flag(self, key: str) -> Optional[FlagValue]:
        """
        Get the value of a flag: a variant string, True, or False when the flag is unknown.

        Returns None if flags have not been loaded yet. The first read of each
        flag after a flags load captures a `$feature_flag_called` event.

        Examples:
            ```python
            if posthog.get_feature_flag('checkout-flow') == 'variant-b':
                ...
            ```

        Category:
            Feature Flags
        """
        details = self.get_feature_flag_details()
        if details is None:
            return None

        flag = details["flags"].get(key)
        response = flag.get_value() if flag is not None else False

        if self.send_feature_flag_event:
            self._capture_feature_flag_called(key, response, flag, details)

        return response

    def is_feature_enabled(self, key: str) -> Optional[bool]:
        """
        Whether the flag is on for the current user, None if flags have not been loaded yet.

        Category:
            Feature Flags
        """
        response = self.get_feature_flag(key)
        if response is None:
            return None
        return bool(response)

    def get_feature_flag_payload(self, key: str) -> Any:
        """
        The decoded payload of an enabled flag, None if there is none or flags aren't loaded.

        Category:
            Feature Flags
        """
        details = self.get_feature_flag_details()
        if details is None:
            return None
        return details["featureFlagPayloads"].get(key)

    def get_all_flags(self) -> Optional[Dict[str, FlagValue]]:
        """
        Every cached flag value, keyed by flag key.

        Category:
            Feature Flags
        """
        details = self.get_feature_flag_details()
        if details is None:
            return None
        return details["featureFlags"]

    def get_all_flags_and_payloads(self) -> FlagsAndPayloads:
        """
        Every cached flag value and payload.

        Category:
            Feature Flags
        """
        return to_flags_and_payloads(self.get_feature_flag_details())

    def override_feature_flag(self, flags: Optional[Dict[str, FlagValue]]) -> None:
        """
        Force flag values locally; a False value hides the flag, None removes all overrides.

        Examples:
            ```python
            posthog.override_feature_flag({'beta-feature': True, 'checkout-flow': 'variant-b'})
            ```
        """
        self.state.set(PersistedProperty.OVERRIDE_FEATURE_FLAGS, flags)

    def on_feature_flags(self, callback: Callable[[Dict[str, FlagValue]], None]):
        """Call `callback` with all flag values whenever flags are loaded; returns an unsubscribe function."""

        def listener(_):
            flags = self.get_all_flags()
            if flags is not None:
                callback(flags)

        return self.on("featureflags", listener)

    def on_feature_flag(self, key: str, callback: Callable[[FlagValue], None]):
        """Call `callback` with the value of `key` whenever flags are loaded."""

        def listener(_):
            value = self.get_feature_flag(key)
            if value is not None:
                callback(value)

        return self.on("featureflags", listener)

    def reload_feature_flags(self) -> Optional[Dict[str, FlagValue]]:
        """
        Load flags for the current user now.

        This never notifies `on_remote_config`.

        Returns:
            The loaded flag values, or None if the load failed.

        Category:
            Feature Flags
        """
        response = self._load_flags(RemoteConfigSource.SUPPRESSED)
        if response is None:
            return None
        return response.get("featureFlags")

    def reload_remote_config(self) -> Optional[Dict[str, Any]]:
        """
        Load the project's remote config, then flags if the project has any.

        `on_remote_config` is notified once: from the remote config response
        when flags aren't loaded as part of this call, otherwise from the flags
        response, and only if that load succeeds.

        Returns:
            The remote config, the cached one if loading failed.
        """
        if self.disabled:
            return None

        config = self.flags_resolver.get_remote_config()
        source = remote_config_source(config, self.preload_feature_flags)

        if config is None:
            self.log.debug("[REMOTE CONFIG] using cached remote config")
        else:
            self._cache_remote_config(config)
            if config.get("hasFeatureFlags") is False:
                self.log.debug(
                    "[REMOTE CONFIG] project has no feature flags, will not load feature flags."
                )
                self._set_known_flag_details(normalize_flags_response({"flags": {}}))

        if source == RemoteConfigSource.REMOTE_CONFIG:
            if config is not None:
                self._notify_remote_config(config)
        else:
            self._load_flags(source)

        if config is None:
            return self.state.get(PersistedProperty.REMOTE_CONFIG)
        return config

    def get_surveys(self) -> Optional[list]:
        """Surveys from the last remote config load."""
        return self.state.get(PersistedProperty.SURVEYS)

    # Events and lifecycle

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """
        Listen to client events: `error`, `flush`, `featureflags`, `remoteconfig`,
        one event per envelope type (`capture`, `identify`, ...) or `*` for all of them.
        """
        return self.events.on(event, callback)

    def debug(self, enabled=True) -> None:
        """Log every client event at DEBUG level, or stop doing so."""
        if self._debug_unsubscribe is not None:
            self._debug_unsubscribe()
            self._debug_unsubscribe = None

        if enabled:
            # Ensures that debug level messages are logged when debug mode is on.
            # Otherwise, defaults to WARNING level. See https://docs.python.org/3/howto/logging.html#what-happens-if-no-configuration-is-provided
            logging.basicConfig()
            self.log.setLevel(logging.DEBUG)
            self._debug_unsubscribe = self.on(
                "*",
                lambda event, payload: self.log.debug(
                    "PostHog Debug %s %s", event, payload
                ),
            )
        else:
            self.log.setLevel(logging.WARNING)

    @property
    def is_debug(self) -> bool:
        return self._debug_unsubscribe is not None

    def flush(self) -> None:
        """
        Send every queued event now, blocking until done.

        Raises:
            APIError: the server rejected a batch.
            NetworkError: the server could not be reached.

        Examples:
            ```python
            posthog.capture('event_name')
            posthog.flush()  # Ensures the event is sent immediately
            ```
        """
        if self.disabled:
            return
        self.flush_engine.flush()

    def join(self, timeout=None) -> None:
        """
        End the consumer thread. Do not use directly, call `shutdown()` instead.
        """
        if self.consumer is None:
            return
        self.consumer.pause()
        try:
            self.consumer.join(timeout)
        except RuntimeError:
            # consumer thread has not started
            pass

    def shutdown(self, timeout=30) -> None:
        """
        Stop accepting events and deliver what is queued, giving up after `timeout` seconds.

        Call this before the process ends in serverless environments to avoid data loss.
        Delivery errors are logged, not raised. A network failure ends the
        attempt early and leaves the remaining events queued.

        Examples:
            ```python
            posthog.shutdown()
            ```
        """
        deadline = time.monotonic() + timeout
        self._shutting_down = True

        self.join(timeout)
        self._wait_for_tasks(deadline)

        while (
            not self.disabled
            and not self.opted_out
            and len(self.queue) > 0
            and time.monotonic() < deadline
        ):
            try:
                self.flush()
            except NetworkError as e:
                # unreachable, the queue stays persisted for the next run
                self.log.error("error flushing on shutdown: %s", e)
                break
            except Exception as e:
                self.log.error("error flushing on shutdown: %s", e)

        remaining = len(self.queue)
        if remaining and not self.disabled and not self.opted_out:
            self.log.warning("shutdown ended with %d events still queued", remaining)

    # Internals

    def _can_enqueue(self, type_: str) -> bool:
        if self.disabled:
            return False
        if self.opted_out:
            self.events.emit(type_, OPTED_OUT_MESSAGE)
            return False
        if self._shutting_down:
            self.log.warning("client is shut down, dropping %s event", type_)
            return False
        return True

    def _enqueue(self, type_: str, message: Dict[str, Any], options) -> Optional[str]:
        """Build the envelope around `message` and queue it, returns its uuid."""
        msg = {
            **message,
            "type": type_,
            "library": LIBRARY_ID,
            "library_version": VERSION,
            "timestamp": to_iso_timestamp(options.get("timestamp")),
            "uuid": stringify_id(options.get("uuid")) or new_uuid(),
        }

        disable_geoip = options.get("disable_geoip")
        if disable_geoip is None:
            disable_geoip = self.disable_geoip
        if disable_geoip:
            msg["properties"]["$geoip_disable"] = True

        msg = clean(msg)
        queue_length = self.queue.enqueue(msg)
        self.log.debug("enqueued %s.", msg["event"])
        self.events.emit(type_, msg)

        if queue_length >= self.flush_at and self.consumer is not None:
            self.consumer.wake()

        return msg["uuid"]

    def _get_props(self) -> Dict[str, Any]:
        return self.state.get(PersistedProperty.PROPS) or {}

    def _enrich_properties(
        self, properties: Optional[Dict[str, Any]] = None, include_flags=True
    ) -> Dict[str, Any]:
        with self._props_lock:
            session_props = dict(self.session_props)
        return {
            **self._get_props(),
            **session_props,
            **(properties or {}),
            **self._get_common_event_properties(include_flags),
            "$session_id": self.get_session_id(),
        }

    def _get_common_event_properties(self, include_flags=True) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        feature_flags = self.get_all_flags() if include_flags else None
        if feature_flags:
            for feature, variant in feature_flags.items():
                properties[f"$feature/{feature}"] = variant
            active_feature_flags = [
                key for (key, value) in feature_flags.items() if value is not False
            ]
            if active_feature_flags:
                properties["$active_feature_flags"] = active_feature_flags

        properties["$lib"] = LIBRARY_ID
        properties["$lib_version"] = VERSION
        return properties

    def _setup_bootstrap(self, bootstrap: Optional[BootstrapArgs]) -> None:
        # bootstrap values never overwrite persisted ones
        if not bootstrap:
            return

        self.identity.set_bootstrap_ids(
            bootstrap.get("distinctId"), bootstrap.get("isIdentifiedId", False)
        )

        if not bootstrap.get("featureFlags"):
            return
        details = flags_from_values_and_payloads(
            bootstrap.get("featureFlags"), bootstrap.get("featureFlagPayloads")
        )
        if not details["flags"]:
            return

        self.state.set(
            PersistedProperty.BOOTSTRAP_FEATURE_FLAG_DETAILS, flags_to_storage(details)
        )
        current = self._get_known_flag_details()
        flags = {**details["flags"], **(current["flags"] if current else {})}
        self._set_known_flag_details(
            normalize_flags_response(
                {"flags": flags, "requestId": details.get("requestId")}
            )
        )

    def _get_known_flag_details(self) -> Optional[FlagsResponse]:
        stored = self.state.get(PersistedProperty.FEATURE_FLAG_DETAILS)
        if not stored:
            return None
        return normalize_flags_response(stored)

    def _get_bootstrapped_flag_details(self) -> Optional[FlagsResponse]:
        stored = self.state.get(PersistedProperty.BOOTSTRAP_FEATURE_FLAG_DETAILS)
        if not stored:
            return None
        return normalize_flags_response(stored)

    def _set_known_flag_details(self, details: Optional[FlagsResponse]) -> None:
        self._store_flag_details(details)
        self._emit_feature_flags(details)

    def _store_flag_details(self, details: Optional[FlagsResponse]) -> None:
        self.state.set(
            PersistedProperty.FEATURE_FLAG_DETAILS,
            flags_to_storage(details) if details is not None else None,
        )

    def _emit_feature_flags(self, details: Optional[FlagsResponse]) -> None:
        self.events.emit(
            "featureflags", to_values(details.get("flags")) if details else {}
        )

    def _load_flags(
        self, source: RemoteConfigSource = RemoteConfigSource.SUPPRESSED
    ) -> Optional[FlagsResponse]:
        """Load flags for the current user and cache them, None when the load failed."""
        if self.disabled:
            return None

        # listeners run after the lock is released, they may reload flags themselves
        with self._flags_load_lock:
            extra: Dict[str, Any] = {"$anon_distinct_id": self.get_anonymous_id()}
            if self.disable_geoip:
                extra["geoip_disable"] = True

            result = self.flags_resolver.resolve_flags(
                self.get_distinct_id(),
                groups=self._get_props().get("$groups") or {},
                person_properties=self.state.get(PersistedProperty.PERSON_PROPERTIES),
                group_properties=self.state.get(PersistedProperty.GROUP_PROPERTIES),
                extra=extra,
            )
            if not result.success or result.response is None:
                return None

            response = result.response
            quota_limited = "feature_flags" in (response.get("quotaLimited") or [])
            if quota_limited:
                self.log.warning(
                    "[FEATURE FLAGS] Feature flags quota limit exceeded - unsetting all flags. Learn more about billing limits at https://posthog.com/docs/billing/limits-alerts"
                )
                details = None
            else:
                if self.send_feature_flag_event:
                    # flag values may have changed, report them again
                    with self._flag_calls_lock:
                        self._flag_calls_reported = set()

                details = response
                if response.get("errorsWhileComputingFlags"):
                    # not every flag was computed, keep the cached value of the missing ones
                    current = self._get_known_flag_details()
                    flags = {**(current["flags"] if current else {}), **response["flags"]}
                    details = normalize_flags_response({**response, "flags": flags})

            self._store_flag_details(details)
            if not quota_limited:
                self.state.set(PersistedProperty.FLAGS_ENDPOINT_WAS_HIT, True)
                self._cache_session_replay("flags", response)

        self._emit_feature_flags(details)
        if quota_limited:
            return response
        if source == RemoteConfigSource.FLAGS:
            self._notify_remote_config(response)
        return response

    def _reload_flags_in_background(self) -> None:
        self._run_in_background(self._load_flags, RemoteConfigSource.SUPPRESSED)

    def _capture_feature_flag_called(
        self,
        key: str,
        response: FlagValue,
        flag: Optional[FeatureFlag],
        details: FlagsResponse,
    ) -> None:
        with self._flag_calls_lock:
            if key in self._flag_calls_reported:
                return
            self._flag_calls_reported.add(key)

        properties: Dict[str, Any] = {
            "$feature_flag": key,
            "$feature_flag_response": response,
            # no flags response yet means the value came from bootstrap
            "$used_bootstrap_value": not self.state.get(
                PersistedProperty.FLAGS_ENDPOINT_WAS_HIT
            ),
        }
        if flag is not None:
            if flag.metadata.id is not None:
                properties["$feature_flag_id"] = flag.metadata.id
            if flag.metadata.version is not None:
                properties["$feature_flag_version"] = flag.metadata.version
            if flag.reason is not None:
                properties["$feature_flag_reason"] = (
                    flag.reason.description or flag.reason.code
                )

        bootstrapped = self._get_bootstrapped_flag_details()
        if bootstrapped is not None:
            if key in bootstrapped["featureFlags"]:
                properties["$feature_flag_bootstrapped_response"] = bootstrapped[
                    "featureFlags"
                ][key]
            if key in bootstrapped["featureFlagPayloads"]:
                properties["$feature_flag_bootstrapped_payload"] = bootstrapped[
                    "featureFlagPayloads"
                ][key]

        if details.get("requestId"):
            properties["$feature_flag_request_id"] = details["requestId"]

        self.capture("$feature_flag_called", properties)

    def _cache_remote_config(self, config: Dict[str, Any]) -> None:
        surveys = config.get("surveys")
        # surveys is a boolean when the project has none
        self.state.set(
            PersistedProperty.SURVEYS, surveys if isinstance(surveys, list) else None
        )
        self.state.set(
            PersistedProperty.REMOTE_CONFIG,
            {key: value for key, value in config.items() if key != "surveys"},
        )
        self._cache_session_replay("remote config", config)

        if isinstance(self.transport, RequestsTransport) and self.transport.gzip:
            if "gzip-js" not in (config.get("supportedCompression") or []):
                self.log.debug("[REMOTE CONFIG] gzip is not supported, disabling compression")
                self.transport.gzip = False

    def _cache_session_replay(self, source: str, response: Dict[str, Any]) -> None:
        session_replay = response.get("sessionRecording")
        if session_replay:
            self.log.debug("Session replay config from %s: %s", source, session_replay)
            self.state.set(PersistedProperty.SESSION_REPLAY, session_replay)
        elif session_replay is False:
            self.log.debug("Session replay config from %s disabled.", source)
            self.state.set(PersistedProperty.SESSION_REPLAY, None)

    def _notify_remote_config(self, config: Dict[str, Any]) -> None:
        self.events.emit("remoteconfig", config)
        if self.on_remote_config is None:
            return
        try:
            self.on_remote_config(config)
        except Exception as e:
            self.log.exception(f"Error in on_remote_config callback: {e}")

    def _run_in_background(self, target: Callable, *args) -> Optional[Thread]:
        if self.disabled or self._shutting_down:
            return None
        thread = Thread(target=self._run_task, args=(target,) + args, daemon=True)
        with self._tasks_lock:
            self._tasks.add(thread)
        thread.start()
        return thread

    def _run_task(self, target: Callable, *args) -> None:
        try:
            target(*args)
        except Exception as e:
            self.log.exception(f"Error in background task: {e}")
        finally:
            with self._tasks_lock:
                self._tasks.discard(threading.current_thread())

    def _wait_for_tasks(self, deadline: float) -> None:
        with self._tasks_lock:
            tasks = list(self._tasks)
        for task in tasks:
            task.join(max(0.0, deadline - time.monotonic()))
