import json
import logging
from gzip import GzipFile
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Protocol, Union, runtime_checkable

import backoff
import requests
from typing_extensions import NotRequired, TypedDict

from posthog_core.errors import (
    APIError,
    NetworkError,
    PostHogError,
    QuotaLimitError,
    is_retryable,
)
from posthog_core.utils import DatetimeSerializer, current_iso_time, remove_trailing_slash
from posthog_core.version import VERSION

__all__ = [
    "APIError",
    "NetworkError",
    "QuotaLimitError",
    "FetchOptions",
    "FetchResponse",
    "Transport",
    "RequestsTransport",
    "fetch",
    "fetch_with_retry",
    "batch_post",
    "flags",
    "remote_config",
]

US_INGESTION_ENDPOINT = "https://us.i.posthog.com"
EU_INGESTION_ENDPOINT = "https://eu.i.posthog.com"
DEFAULT_HOST = US_INGESTION_ENDPOINT
USER_AGENT = "posthog-core-python/" + VERSION

# Upper bound for a single backoff delay, in seconds.
MAX_RETRY_DELAY = 30

_session = requests.sessions.Session()


class FetchOptions(TypedDict):
    method: str
    headers: Dict[str, str]
    body: NotRequired[Optional[Union[str, bytes]]]
    timeout: NotRequired[Optional[float]]


@runtime_checkable
class FetchResponse(Protocol):
    status: int

    def json(self) -> Any: ...

    def text(self) -> str: ...


@runtime_checkable
class Transport(Protocol):
    """Performs exactly one HTTP request. Retries are handled by the caller."""

    def fetch(self, url: str, options: FetchOptions) -> FetchResponse: ...


class RequestsResponse(object):
    def __init__(self, response: requests.Response):
        self.response = response
        self.status = response.status_code

    def json(self) -> Any:
        return self.response.json()

    def text(self) -> str:
        return self.response.text


class RequestsTransport(object):
    """Default transport backed by a shared `requests` session."""

    def __init__(self, session=None, gzip=False, timeout=10):
        self.session = session or _session
        self.gzip = gzip
        self.timeout = timeout

    def fetch(self, url: str, options: FetchOptions) -> RequestsResponse:
        headers = {"User-Agent": USER_AGENT, **(options.get("headers") or {})}
        data = options.get("body")
        if self.gzip and data:
            headers["Content-Encoding"] = "gzip"
            buf = BytesIO()
            with GzipFile(fileobj=buf, mode="w") as gz:
                # 'data' was produced by json.dumps(),
                # whose default encoding is utf-8.
                gz.write(data.encode("utf-8") if isinstance(data, str) else data)
            data = buf.getvalue()

        timeout = options.get("timeout")
        res = self.session.request(
            options.get("method", "GET"),
            url,
            data=data,
            headers=headers,
            timeout=timeout if timeout is not None else self.timeout,
        )
        return RequestsResponse(res)


def determine_server_host(host: Optional[str]) -> str:
    """Determines the server host to use."""
    host_or_default = host or DEFAULT_HOST
    trimmed_host = remove_trailing_slash(host_or_default)
    if trimmed_host in ("https://app.posthog.com", "https://us.posthog.com"):
        return US_INGESTION_ENDPOINT
    elif trimmed_host == "https://eu.posthog.com":
        return EU_INGESTION_ENDPOINT
    else:
        return trimmed_host


def determine_assets_host(host: str) -> str:
    """Remote config is served from the assets CDN on PostHog cloud."""
    if host == US_INGESTION_ENDPOINT:
        return "https://us-assets.i.posthog.com"
    elif host == EU_INGESTION_ENDPOINT:
        return "https://eu-assets.i.posthog.com"
    return host


def fetch(transport: Transport, url: str, options: FetchOptions) -> FetchResponse:
    """Run one request, turning failures into `NetworkError` or `APIError`."""
    log = logging.getLogger("posthog")
    log.debug("making request: %s %s", options.get("method"), url)
    try:
        res = transport.fetch(url, options)
    except Exception as e:
        log.debug("request to %s failed: %s", url, e)
        raise NetworkError(e) from e

    if 200 <= res.status < 300:
        return res

    try:
        payload = res.json()
        log.debug("received response: %s", payload)
        raise APIError(res.status, payload["detail"])
    except (KeyError, TypeError, ValueError):
        raise APIError(res.status, res.text())


def fetch_with_retry(
    transport: Transport,
    url: str,
    options: FetchOptions,
    retry_count: int = 3,
    retry_delay: float = 3.0,
    giveup: Optional[Callable[[Exception], bool]] = None,
) -> FetchResponse:
    """
    Attempt the request and retry with exponential backoff before raising.

    Waits `retry_delay * 2 ** attempt` seconds between attempts (capped at
    MAX_RETRY_DELAY), for at most `retry_count` retries.
    """

    def fatal_exception(exc):
        if giveup is not None and giveup(exc):
            return True
        return not is_retryable(exc)

    @backoff.on_exception(
        backoff.expo,
        PostHogError,
        max_tries=retry_count + 1,
        giveup=fatal_exception,
        jitter=None,
        factor=retry_delay,
        max_value=MAX_RETRY_DELAY,
    )
    def send_request():
        return fetch(transport, url, options)

    return send_request()


def _json_headers(headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    return {**(headers or {}), "Content-Type": "application/json"}


def batch_post(
    transport: Transport,
    api_key: str,
    host: Optional[str] = None,
    batch=None,
    timeout: Optional[float] = None,
    retry_count: int = 3,
    retry_delay: float = 3.0,
    historical_migration: bool = False,
    headers: Optional[Dict[str, str]] = None,
    giveup: Optional[Callable[[Exception], bool]] = None,
) -> FetchResponse:
    """Post a batch of events to the batch API endpoint"""
    log = logging.getLogger("posthog")
    body: Dict[str, Any] = {
        "api_key": api_key,
        "batch": batch or [],
        "sent_at": current_iso_time(),
    }
    if historical_migration:
        body["historical_migration"] = True

    url = remove_trailing_slash(host or DEFAULT_HOST) + "/batch/"
    res = fetch_with_retry(
        transport,
        url,
        {
            "method": "POST",
            "headers": _json_headers(headers),
            "body": json.dumps(body, cls=DatetimeSerializer),
            "timeout": timeout,
        },
        retry_count=retry_count,
        retry_delay=retry_delay,
        giveup=giveup,
    )
    log.debug("data uploaded successfully")
    return res


def flags(
    transport: Transport,
    api_key: str,
    host: Optional[str] = None,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
    **kwargs,
) -> Any:
    """Post the `kwargs` to the flags API endpoint, returns the decoded body."""
    log = logging.getLogger("posthog")
    body = {"token": api_key, **kwargs}
    url = remove_trailing_slash(host or DEFAULT_HOST) + "/flags/?v=2&config=true"
    res = fetch_with_retry(
        transport,
        url,
        {
            "method": "POST",
            "headers": _json_headers(headers),
            "body": json.dumps(body, cls=DatetimeSerializer),
            "timeout": timeout,
        },
        retry_count=0,
    )
    log.debug("Feature flags evaluated successfully")
    response = res.json()
    # other services also report quota limits here, only feature flags matter
    if isinstance(response, dict) and "feature_flags" in (
        response.get("quotaLimited") or []
    ):
        raise QuotaLimitError(res.status, "Feature flags quota limited")
    return response


def remote_config(
    transport: Transport,
    api_key: str,
    host: Optional[str] = None,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """Get the project's remote config from the assets host."""
    log = logging.getLogger("posthog")
    assets_host = determine_assets_host(remove_trailing_slash(host or DEFAULT_HOST))
    url = f"{assets_host}/array/{api_key}/config"
    res = fetch_with_retry(
        transport,
        url,
        {"method": "GET", "headers": _json_headers(headers), "timeout": timeout},
        retry_count=0,
    )
    log.debug("Remote config loaded successfully")
    return res.json()
