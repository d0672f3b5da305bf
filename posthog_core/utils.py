import json
import logging
import numbers
import platform
import sys
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

import distro  # For Linux OS detection
import six
from dateutil.tz import tzlocal, tzutc

log = logging.getLogger("posthog")

# naive datetimes younger than this are assumed to come from datetime.now()
LOCAL_TIME_GUESS_WINDOW_SECONDS = 5

_JSON_NATIVE_TYPES = six.string_types + (
    bool,
    numbers.Number,
    datetime,
    date,
    type(None),
)


def is_naive(dt):
    """Determines if a given datetime.datetime is naive."""
    return dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None


def guess_timezone(dt):
    """Make `dt` timezone aware: local time if it looks like now(), UTC otherwise."""
    if not is_naive(dt):
        return dt

    age = datetime.now() - dt
    if age.total_seconds() < LOCAL_TIME_GUESS_WINDOW_SECONDS:
        return dt.replace(tzinfo=tzlocal())
    return dt.replace(tzinfo=tzutc())


def current_iso_time() -> str:
    return datetime.now(tz=tzutc()).isoformat()


def to_iso_timestamp(timestamp) -> str:
    """ISO 8601 form of an event timestamp; strings are trusted as given."""
    if timestamp is None:
        return current_iso_time()
    if isinstance(timestamp, datetime):
        return guess_timezone(timestamp).isoformat()
    return str(timestamp)


def remove_trailing_slash(host):
    return host[:-1] if host.endswith("/") else host


def new_uuid() -> str:
    return str(uuid4())


def stringify_id(val) -> Optional[str]:
    if val is None:
        return None
    if isinstance(val, six.string_types):
        return val
    return str(val)


def clean(item):
    """
    Coerce `item` into values `DatetimeSerializer` can encode.

    Containers are cleaned recursively and dataclasses become dicts. Values
    that can't be represented, such as functions or exceptions, become None.
    """
    if isinstance(item, Decimal):
        return float(item)
    if isinstance(item, UUID):
        return str(item)
    if isinstance(item, _JSON_NATIVE_TYPES):
        return item
    if isinstance(item, (set, list, tuple)):
        return [clean(value) for value in item]
    if isinstance(item, dict):
        return _clean_dict(item)
    if is_dataclass(item) and not isinstance(item, type):
        return _clean_dict(asdict(item))
    if isinstance(item, bytes):
        return _decode(item)
    return None


def _clean_dict(dict_):
    data = {}
    for key, value in six.iteritems(dict_):
        try:
            data[key] = clean(value)
        except TypeError:
            log.warning(
                "Dropping property %r, values of type %s can't be serialized to JSON",
                key,
                type(value),
            )
    return data


def _decode(raw: bytes) -> Optional[str]:
    try:
        return raw.decode("utf-8", "strict")
    except UnicodeDecodeError as e:
        log.warning("Error decoding: %s", e)
        return None


class DatetimeSerializer(json.JSONEncoder):
    def default(self, obj: Any):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()

        return json.JSONEncoder.default(self, obj)


def merge_group_properties(
    existing: Optional[Dict[str, Dict[str, Any]]],
    incoming: Optional[Dict[str, Dict[str, Any]]],
) -> Dict[str, Dict[str, Any]]:
    """
    Merge group properties for flag evaluation one level deep.

    Group types present on both sides get their property dicts merged, with
    incoming keys winning. Group types only present on one side are kept as is.

    Examples:
        >>> merge_group_properties({"org": {"a": 1}}, {"org": {"b": 2}})
        {'org': {'a': 1, 'b': 2}}
    """
    merged = {group_type: dict(props or {}) for group_type, props in (existing or {}).items()}
    for group_type, props in (incoming or {}).items():
        merged[group_type] = {**merged.get(group_type, {}), **(props or {})}
    return merged


def get_os_info():
    """OS name and version, named the way user agent parsing names them."""
    platform_name = sys.platform

    if platform_name.startswith("win"):
        return "Windows", platform.win32_ver()[0] or ""
    if platform_name == "darwin":
        return "Mac OS X", platform.mac_ver()[0] or ""
    if platform_name.startswith("linux"):
        # the distribution version, platform.release() is the kernel's
        return "Linux", distro.version() or ""
    if platform_name.startswith("freebsd"):
        return "FreeBSD", platform.release()
    return platform_name, platform.release()


def system_context() -> Dict[str, Any]:
    """Runtime properties attached to every captured event."""
    os_name, os_version = get_os_info()

    return {
        "$python_runtime": platform.python_implementation(),
        "$python_version": ".".join(str(part) for part in sys.version_info[:3]),
        "$os": os_name,
        "$os_version": os_version,
    }
