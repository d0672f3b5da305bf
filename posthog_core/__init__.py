from typing import Any, Callable, Dict, Optional  # noqa: F401

from typing_extensions import Unpack

from posthog_core.args import OptionalCaptureArgs
from posthog_core.client import Client
from posthog_core.errors import (  # noqa: F401
    APIError,
    NetworkError,
    PayloadTooLargeError,
    PostHogError,
    QuotaLimitError,
    ValidationError,
)
from posthog_core.request import Transport  # noqa: F401
from posthog_core.storage import MemoryStorage, PersistedStore  # noqa: F401
from posthog_core.types import FlagsAndPayloads, FlagValue, PersistedProperty  # noqa: F401
from posthog_core.version import VERSION

__version__ = VERSION

"""Settings."""
api_key = None  # type: Optional[str]
host = None  # type: Optional[str]
on_error = None  # type: Optional[Callable]
on_remote_config = None  # type: Optional[Callable]
debug = False  # type: bool
disabled = False  # type: bool
disable_geoip = False  # type: bool
flush_at = 20  # type: int
flush_interval = 10  # type: float
preload_feature_flags = True  # type: bool
disable_remote_config = False  # type: bool
send_feature_flag_event = True  # type: bool
feature_flags_request_timeout = 10  # type: float
storage = None  # type: Optional[PersistedStore]
transport = None  # type: Optional[Transport]

default_client = None  # type: Optional[Client]


def capture(
    event: str,
    properties: Optional[Dict[str, Any]] = None,
    **kwargs: Unpack[OptionalCaptureArgs],
) -> Optional[str]:
    """
    Capture allows you to capture anything a user does within your system, which you can later use in PostHog to find patterns in usage.

    Events are attributed to the current distinct id, see `identify`.

    Examples:
        ```python
        posthog_core.capture('movie played', {'movie_id': '123', 'category': 'romcom'})
        ```
    """
    return _proxy("capture", event, properties, **kwargs)


def identify(
    distinct_id: str,
    properties: Optional[Dict[str, Any]] = None,
    **kwargs: Unpack[OptionalCaptureArgs],
) -> Optional[str]:
    """
    Identify the current user and optionally set person properties.

    Examples:
        ```python
        posthog_core.identify('user-123', {'$set': {'email': 'max@example.com'}})
        ```
    """
    return _proxy("identify", distinct_id, properties, **kwargs)


def alias(alias: str, **kwargs: Unpack[OptionalCaptureArgs]) -> Optional[str]:
    """Link `alias` to the current distinct id."""
    return _proxy("alias", alias, **kwargs)


def group_identify(
    group_type: str,
    group_key: str,
    properties: Optional[Dict[str, Any]] = None,
    **kwargs: Unpack[OptionalCaptureArgs],
) -> Optional[str]:
    """
    Set properties on a group

    Examples:
        ```python
        posthog_core.group_identify('company', 5, {'employees': 11})
        ```
    """
    return _proxy("group_identify", group_type, group_key, properties, **kwargs)


def group(
    group_type: str,
    group_key: str,
    properties: Optional[Dict[str, Any]] = None,
    **kwargs: Unpack[OptionalCaptureArgs],
) -> Optional[str]:
    return _proxy("group", group_type, group_key, properties, **kwargs)


def register(properties: Dict[str, Any]) -> None:
    _proxy("register", properties)


def reset() -> None:
    """Forget the current user, queued events are still sent."""
    _proxy("reset")


def get_distinct_id() -> str:
    return _proxy("get_distinct_id")


def opt_in() -> None:
    _proxy("opt_in")


def opt_out() -> None:
    _proxy("opt_out")


def is_feature_enabled(key: str) -> Optional[bool]:
    """
    Use feature flags to enable or disable features for users.

    Returns None until flags have been loaded.

    Examples:
        ```python
        if posthog_core.is_feature_enabled('beta feature'):
            # do something
        ```
    """
    return _proxy("is_feature_enabled", key)


def get_feature_flag(key: str) -> Optional[FlagValue]:
    """
    Get the value of a feature flag for the current user.

    Examples:
        ```python
        if posthog_core.get_feature_flag('beta-feature') == 'variant-b':
            # do variant b
        ```
    """
    return _proxy("get_feature_flag", key)


def get_feature_flag_payload(key: str) -> Any:
    return _proxy("get_feature_flag_payload", key)


def get_all_flags() -> Optional[Dict[str, FlagValue]]:
    """Get all flag values for the current user, None until flags have been loaded."""
    return _proxy("get_all_flags")


def get_all_flags_and_payloads() -> FlagsAndPayloads:
    return _proxy("get_all_flags_and_payloads")


def set_person_properties_for_flags(properties: Dict[str, Any]) -> None:
    _proxy("set_person_properties_for_flags", properties)


def set_group_properties_for_flags(properties: Dict[str, Dict[str, Any]]) -> None:
    _proxy("set_group_properties_for_flags", properties)


def reload_feature_flags() -> Optional[Dict[str, FlagValue]]:
    """Load feature flags for the current user from PostHog."""
    return _proxy("reload_feature_flags")


def flush():
    """Tell the client to flush."""
    _proxy("flush")


def join():
    """Stop the background consumer thread"""
    _proxy("join")


def shutdown(timeout=30):
    """Flush all messages and cleanly shutdown the client"""
    _proxy("shutdown", timeout)


def setup():
    global default_client
    if not default_client:
        if not api_key:
            raise ValidationError("API key is required")
        default_client = Client(
            api_key,
            host=host,
            debug=debug,
            storage=storage,
            transport=transport,
            on_error=on_error,
            on_remote_config=on_remote_config,
            flush_at=flush_at,
            flush_interval=flush_interval,
            disabled=disabled,
            disable_geoip=disable_geoip,
            preload_feature_flags=preload_feature_flags,
            disable_remote_config=disable_remote_config,
            send_feature_flag_event=send_feature_flag_event,
            feature_flags_request_timeout=feature_flags_request_timeout,
        )

    # always set incase user changes it
    default_client.disabled = disabled
    if default_client.is_debug != debug:
        default_client.debug(debug)


def _proxy(method, *args, **kwargs):
    """Create an analytics client if one doesn't exist and send to it."""
    setup()

    fn = getattr(default_client, method)
    return fn(*args, **kwargs)


class PostHogCore(Client):
    pass
