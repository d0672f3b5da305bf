import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict, Union, cast

FlagValue = Union[bool, str]


class PersistedProperty(str, Enum):
    """Keys the client state is stored under in the persisted store."""

    ANONYMOUS_ID = "anonymous_id"
    DISTINCT_ID = "distinct_id"
    PROPS = "props"
    FEATURE_FLAG_DETAILS = "feature_flag_details"
    BOOTSTRAP_FEATURE_FLAG_DETAILS = "bootstrap_feature_flag_details"
    OVERRIDE_FEATURE_FLAGS = "override_feature_flags"
    QUEUE = "queue"
    OPTED_OUT = "opted_out"
    SESSION_ID = "session_id"
    SESSION_START_TIMESTAMP = "session_start_timestamp"
    SESSION_LAST_TIMESTAMP = "session_timestamp"
    PERSON_PROPERTIES = "person_properties"
    GROUP_PROPERTIES = "group_properties"
    SESSION_REPLAY = "session_replay"
    SURVEYS = "surveys"
    REMOTE_CONFIG = "remote_config"
    FLAGS_ENDPOINT_WAS_HIT = "flags_endpoint_was_hit"


class RemoteConfigSource(str, Enum):
    """Which response delivers the on_remote_config callback for one load."""

    REMOTE_CONFIG = "remote-config"
    FLAGS = "flags"
    SUPPRESSED = "suppressed"


def parse_payload(payload: Any) -> Any:
    """Payloads travel as JSON strings; strings that aren't JSON are returned untouched."""
    if not isinstance(payload, str):
        return payload
    try:
        return json.loads(payload)
    except ValueError:
        return payload


@dataclass(frozen=True)
class FlagReason:
    code: str
    condition_index: Optional[int]
    description: Optional[str]

    @classmethod
    def from_json(cls, resp: Any) -> Optional["FlagReason"]:
        if not resp:
            return None
        return cls(
            code=resp.get("code", ""),
            condition_index=resp.get("condition_index"),
            description=resp.get("description"),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "condition_index": self.condition_index,
            "description": self.description,
        }


@dataclass(frozen=True)
class FlagMetadata:
    id: Optional[int] = None
    payload: Optional[str] = None
    version: Optional[int] = None
    description: Optional[str] = None

    @classmethod
    def from_json(cls, resp: Any) -> "FlagMetadata":
        if not resp:
            return cls()
        return cls(
            id=resp.get("id"),
            payload=resp.get("payload"),
            version=resp.get("version"),
            description=resp.get("description"),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "version": self.version,
            "description": self.description,
        }


@dataclass(frozen=True)
class FeatureFlag:
    key: str
    enabled: bool
    variant: Optional[str] = None
    reason: Optional[FlagReason] = None
    metadata: FlagMetadata = field(default_factory=FlagMetadata)

    def get_value(self) -> FlagValue:
        return self.variant if self.variant is not None else self.enabled

    def get_payload(self) -> Any:
        return parse_payload(self.metadata.payload)

    @classmethod
    def from_json(cls, resp: Any) -> "FeatureFlag":
        return cls(
            key=resp.get("key"),
            enabled=bool(resp.get("enabled")),
            variant=resp.get("variant"),
            reason=FlagReason.from_json(resp.get("reason")),
            metadata=FlagMetadata.from_json(resp.get("metadata")),
        )

    @classmethod
    def from_value_and_payload(
        cls, key: str, value: FlagValue, payload: Any
    ) -> "FeatureFlag":
        """Build the detailed shape from a legacy (value, payload) pair."""
        return cls(
            key=key,
            enabled=bool(value),
            variant=value if isinstance(value, str) else None,
            reason=None,
            metadata=FlagMetadata(
                payload=json.dumps(payload) if payload is not None else None,
            ),
        )

    def with_value(self, value: FlagValue) -> "FeatureFlag":
        return FeatureFlag(
            key=self.key,
            enabled=bool(value),
            variant=value if isinstance(value, str) else None,
            reason=self.reason,
            metadata=self.metadata,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "enabled": self.enabled,
            "variant": self.variant,
            "reason": self.reason.to_json() if self.reason else None,
            "metadata": self.metadata.to_json(),
        }


class FlagsResponse(TypedDict, total=False):
    flags: Dict[str, FeatureFlag]
    featureFlags: Dict[str, FlagValue]
    featureFlagPayloads: Dict[str, Any]
    errorsWhileComputingFlags: bool
    requestId: Optional[str]
    quotaLimited: Optional[List[str]]


class FlagsAndPayloads(TypedDict, total=True):
    featureFlags: Optional[Dict[str, FlagValue]]
    featureFlagPayloads: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class FlagsError:
    type: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class FlagsResult:
    success: bool
    response: Optional[FlagsResponse] = None
    error: Optional[FlagsError] = None


def normalize_flags_response(resp: Any) -> FlagsResponse:
    """
    Normalize a v1 or v4 flags response so both shapes are populated.

    Args:
        resp: A response carrying either `flags` (v4) or
            `featureFlags`/`featureFlagPayloads` (v1).

    Returns:
        A new FlagsResponse with `flags` holding FeatureFlag objects and
        `featureFlags`/`featureFlagPayloads` holding the legacy projection.
    """
    normalized: Dict[str, Any] = dict(resp or {})
    normalized.setdefault("requestId", None)

    if "flags" in normalized:
        flags = {}
        for key, value in (normalized.get("flags") or {}).items():
            if isinstance(value, FeatureFlag):
                flags[key] = value
            else:
                flags[key] = FeatureFlag.from_json({**value, "key": key})
        normalized["flags"] = flags
        normalized["featureFlags"] = to_values(flags)
        normalized["featureFlagPayloads"] = to_payloads(flags)
    else:
        feature_flags = normalized.get("featureFlags") or {}
        payloads = {
            key: parse_payload(value)
            for key, value in (normalized.get("featureFlagPayloads") or {}).items()
        }
        normalized["featureFlags"] = dict(feature_flags)
        normalized["featureFlagPayloads"] = payloads
        normalized["flags"] = {
            key: FeatureFlag.from_value_and_payload(key, value, payloads.get(key))
            for key, value in feature_flags.items()
        }

    return cast(FlagsResponse, normalized)


def flags_from_values_and_payloads(
    feature_flags: Optional[Dict[str, FlagValue]],
    feature_flag_payloads: Optional[Dict[str, Any]],
) -> FlagsResponse:
    """
    Build a normalized response from bootstrap style values and payloads.

    A key that only appears in the payloads is treated as an enabled flag,
    keys whose value is falsy and have no payload are left out.
    """
    feature_flags = feature_flags or {}
    feature_flag_payloads = feature_flag_payloads or {}
    enabled = {}
    for key in list(feature_flags) + list(feature_flag_payloads):
        if key in enabled:
            continue
        if feature_flags.get(key) or feature_flag_payloads.get(key):
            value = feature_flags.get(key)
            enabled[key] = True if value is None else value

    return normalize_flags_response(
        {"featureFlags": enabled, "featureFlagPayloads": feature_flag_payloads}
    )


def to_values(flags: Optional[Dict[str, FeatureFlag]]) -> Dict[str, FlagValue]:
    return {key: flag.get_value() for key, flag in (flags or {}).items()}


def to_payloads(flags: Optional[Dict[str, FeatureFlag]]) -> Dict[str, Any]:
    return {
        key: flag.get_payload()
        for key, flag in (flags or {}).items()
        if flag.enabled and flag.metadata.payload is not None
    }


def to_flags_and_payloads(resp: Optional[FlagsResponse]) -> FlagsAndPayloads:
    if resp is None:
        return {"featureFlags": None, "featureFlagPayloads": None}
    return {
        "featureFlags": resp.get("featureFlags"),
        "featureFlagPayloads": resp.get("featureFlagPayloads"),
    }


def flags_to_storage(resp: FlagsResponse) -> Dict[str, Any]:
    """Serializable form of a normalized response, as kept in the persisted store."""
    return {
        "flags": {key: flag.to_json() for key, flag in resp.get("flags", {}).items()},
        "requestId": resp.get("requestId"),
    }
