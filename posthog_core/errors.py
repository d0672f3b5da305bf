from typing import Optional, Union


class PostHogError(Exception):
    """Base class for every error raised by the client runtime."""

    error_type = "error"


class ValidationError(PostHogError, ValueError):
    """Bad input passed by the caller, raised before any state is touched."""

    error_type = "validation_error"


class NetworkError(PostHogError):
    """The transport failed without producing an HTTP response."""

    error_type = "connection_error"

    def __init__(self, error: Optional[BaseException] = None):
        super().__init__("Network error while fetching PostHog")
        self.error = error

    def __str__(self):
        if self.error is None:
            return "[PostHog] Network error"
        return "[PostHog] Network error ({0})".format(self.error)


class APIError(PostHogError):
    error_type = "api_error"

    def __init__(self, status: Union[int, str], message: str):
        super().__init__(message)
        self.message = message
        self.status = status

    def __str__(self):
        msg = "[PostHog] {0} ({1})"
        return msg.format(self.message, self.status)


class QuotaLimitError(APIError):
    pass


class PayloadTooLargeError(APIError):
    """A single event was rejected with 413 and cannot be split any further."""

    error_type = "payload_too_large_terminal"

    def __init__(self, message: str = "Payload too large"):
        super().__init__(413, message)


def is_retryable(exc: BaseException) -> bool:
    """Connection errors and HTTP errors are retried, except 413 which is handled by batch splitting."""
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, APIError):
        return exc.status != 413
    return False
