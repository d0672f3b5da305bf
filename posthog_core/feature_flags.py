import logging
from typing import Any, Dict, Optional

import requests

from posthog_core.errors import APIError, NetworkError, QuotaLimitError
from posthog_core.events import EventEmitter
from posthog_core.request import Transport, flags, remote_config
from posthog_core.types import (
    FlagsError,
    FlagsResult,
    RemoteConfigSource,
    normalize_flags_response,
)

log = logging.getLogger("posthog")


class FlagsResolver(object):
    """
    Talks to the flags and remote config endpoints.

    Every outcome comes back as a value: failures are logged, emitted as
    `error` on the event bus and reported in the returned `FlagsResult`.
    """

    def __init__(
        self,
        transport: Transport,
        api_key: str,
        host: Optional[str] = None,
        timeout=10,
        remote_config_timeout=3,
        events: Optional[EventEmitter] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.transport = transport
        self.api_key = api_key
        self.host = host
        self.timeout = timeout
        self.remote_config_timeout = remote_config_timeout
        self.events = events or EventEmitter()
        self.headers = headers

    def resolve_flags(
        self,
        distinct_id: str,
        groups: Optional[Dict[str, Any]] = None,
        person_properties: Optional[Dict[str, Any]] = None,
        group_properties: Optional[Dict[str, Dict[str, Any]]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> FlagsResult:
        """
        Evaluate every flag for `distinct_id` with one request.

        Args:
            distinct_id: The user to evaluate flags for.
            groups: Group keys by group type, e.g. `{"company": "acme"}`.
            person_properties: Properties used for person targeting.
            group_properties: Properties used for group targeting, by group type.
            extra: Additional body fields such as `$anon_distinct_id` or `geoip_disable`.

        Returns:
            A FlagsResult holding the normalized response on success, or a
            FlagsError typed `api_error`, `timeout`, `connection_error` or
            `unknown_error`.
        """
        body = {
            "distinct_id": distinct_id,
            "groups": groups or {},
            "person_properties": person_properties or {},
            "group_properties": group_properties or {},
            **(extra or {}),
        }
        try:
            resp = flags(
                self.transport,
                self.api_key,
                self.host,
                timeout=self.timeout,
                headers=self.headers,
                **body,
            )
            response = normalize_flags_response(resp)
        except QuotaLimitError:
            # a successful evaluation that returned no flags
            return FlagsResult(
                True,
                response=normalize_flags_response(
                    {"flags": {}, "quotaLimited": ["feature_flags"]}
                ),
            )
        except APIError as e:
            log.warning("[FEATURE FLAGS] Unable to get feature flags: %s", e)
            self.events.emit("error", e)
            return FlagsResult(False, error=FlagsError("api_error", e.status))
        except NetworkError as e:
            log.warning("[FEATURE FLAGS] Unable to reach the flags endpoint: %s", e)
            self.events.emit("error", e)
            error_type = (
                "timeout"
                if isinstance(e.error, requests.exceptions.Timeout)
                else "connection_error"
            )
            return FlagsResult(False, error=FlagsError(error_type))
        except Exception as e:
            log.exception(f"[FEATURE FLAGS] Unable to parse the flags response: {e}")
            self.events.emit("error", e)
            return FlagsResult(False, error=FlagsError("unknown_error"))

        return FlagsResult(True, response=response)

    def get_remote_config(self) -> Optional[Dict[str, Any]]:
        """Fetch the project's remote config, `None` when it can't be loaded."""
        try:
            config = remote_config(
                self.transport,
                self.api_key,
                self.host,
                timeout=self.remote_config_timeout,
                headers=self.headers,
            )
        except (APIError, NetworkError, ValueError) as e:
            log.warning("[REMOTE CONFIG] Unable to load remote config: %s", e)
            self.events.emit("error", e)
            return None

        if not isinstance(config, dict):
            log.warning("[REMOTE CONFIG] Ignoring malformed remote config: %r", config)
            return None
        return config


def remote_config_source(
    config: Optional[Dict[str, Any]], preload_feature_flags: bool
) -> RemoteConfigSource:
    """
    Decide which response notifies `on_remote_config` for a remote config load.

    When the project has no flags, or flags won't be loaded as part of this
    bootstrap, the remote config response itself is the notification. Otherwise
    the flags response that follows carries it, so the callback fires once.
    """
    if not preload_feature_flags:
        return RemoteConfigSource.REMOTE_CONFIG
    if config is not None and config.get("hasFeatureFlags") is False:
        return RemoteConfigSource.REMOTE_CONFIG
    return RemoteConfigSource.FLAGS
