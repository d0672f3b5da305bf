import numbers
from datetime import datetime
from typing import Any, Dict, Optional, TypedDict, Union
from uuid import UUID

from typing_extensions import NotRequired  # For Python < 3.11 compatibility

# anything accepted as a distinct id or group key, sent as its string form
ID_TYPES = Union[numbers.Number, str, UUID, int]


class OptionalCaptureArgs(TypedDict):
    """Keyword arguments shared by capture, identify, alias and the group calls.

    Args:
        timestamp: When the event happened, now if omitted. Naive datetimes get a guessed timezone.
        uuid: The event uuid, generated if omitted. It is returned by the call either way.
        disable_geoip: Per event override of the client's `disable_geoip`.
    """

    timestamp: NotRequired[Optional[Union[datetime, str]]]
    uuid: NotRequired[Optional[str]]
    # None means "use the client setting"
    disable_geoip: NotRequired[Optional[bool]]


class BootstrapArgs(TypedDict):
    """Values seeded into the client before anything is loaded.

    Args:
        distinctId: Distinct id to start with.
        isIdentifiedId: Whether `distinctId` is an identified user rather than an anonymous one.
        featureFlags: Flag values served until the first flags load completes.
        featureFlagPayloads: Payloads for the bootstrapped flags.
    """

    distinctId: NotRequired[Optional[ID_TYPES]]
    isIdentifiedId: NotRequired[bool]
    featureFlags: NotRequired[Dict[str, Union[bool, str]]]
    featureFlagPayloads: NotRequired[Dict[str, Any]]
