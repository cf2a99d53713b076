"""Error taxonomy for the relay."""

from enum import Enum


class ConfigError(ValueError):
    """Invalid relay configuration. Raised once, at construction."""


class ClientInputError(Exception):
    """The caller sent no usable target URL. Surfaced as 404, never retried."""


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    RETRIES_EXHAUSTED = "retries_exhausted"


class FetchError(Exception):
    """Terminal upstream failure, after every attempt the fetcher was allowed.

    Carries the last underlying cause and how many attempts were made. The
    cause is for logs only; callers of the relay only ever see a 502.
    """

    def __init__(self, kind: FetchErrorKind, cause: BaseException | None, attempts: int):
        self.kind = kind
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"{kind.value} after {attempts} attempt(s): {cause!r}")


class RelayTransportError(Exception):
    """Writing to the caller failed, usually because the caller went away."""

    def __init__(self, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(f"Caller transport failed: {cause!r}")


class UpstreamStreamError(Exception):
    """The upstream failed after the response headers had gone out.

    Nothing can be reported to the caller at that point; the body is left
    unterminated so the server drops the connection.
    """

    def __init__(self, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(f"Upstream stream broke mid-body: {cause!r}")
