"""Request-scoped value objects passed between the fetcher and the relay.

Nothing here outlives a single request/response cycle.
"""

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import httpx

from .errors import ConfigError, FetchError
from .protocol import RetryPredicate


class BodyMode(str, Enum):
    """How a response body travels to the caller."""

    BUFFERED = "buffered"
    CHUNKED = "chunked"


@dataclass
class UpstreamResponse:
    """What the upstream answered.

    Exactly one of ``body`` (fully read) or ``stream`` (lazy, finite,
    non-restartable) is set.
    """

    status_code: int
    headers: httpx.Headers
    body: bytes | None = None
    stream: AsyncIterator[bytes] | None = None
    close: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)

    def __post_init__(self):
        if (self.body is None) == (self.stream is None):
            raise ValueError("UpstreamResponse needs exactly one of body or stream")

    @property
    def is_materialized(self) -> bool:
        return self.body is not None

    def json(self):
        """Decode a materialized body as JSON. Returns None if it isn't JSON."""
        if self.body is None:
            return None
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError):
            return None

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        close, self.close = self.close, None
        if close is not None:
            await close()

    @classmethod
    def from_httpx(cls, response: httpx.Response, materialized: bool) -> "UpstreamResponse":
        if materialized:
            return cls(
                status_code=response.status_code,
                headers=response.headers,
                body=response.content,
                close=response.aclose,
            )
        return cls(
            status_code=response.status_code,
            headers=response.headers,
            stream=response.aiter_bytes(),
            close=response.aclose,
        )


@dataclass
class FetchRequest:
    """One outbound fetch, with its retry budget."""

    url: str
    method: str = "GET"
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    content: bytes | None = None
    timeout: float = 5.0  # seconds, per attempt
    max_retries: int = 3
    retry_predicate: RetryPredicate | None = None
    body_mode: BodyMode = BodyMode.BUFFERED

    def __post_init__(self):
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)
        self.method = self.method.upper()
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        self.body_mode = BodyMode(self.body_mode)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class Success:
    response: UpstreamResponse
    attempts: int = 1


@dataclass
class Failure:
    error: FetchError

    @property
    def attempts(self) -> int:
        return self.error.attempts


FetchOutcome = Success | Failure


@dataclass
class RelayedResponse:
    """What actually goes back to the caller.

    Status, headers and mode are settled here, before any body byte exists.
    """

    status_code: int
    headers: list[tuple[str, str]]
    mode: BodyMode
    body: bytes | None = None
    stream: AsyncIterator[bytes] | None = None
    close: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    encoding: str = "latin-1"  # how header values go back on the wire
