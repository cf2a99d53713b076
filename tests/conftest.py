import asyncio

import httpx
import pytest

from urlrelay.config import RelayConfig
from urlrelay.fetcher import RetryingFetcher


@pytest.fixture
def anyio_backend():
    # The fetcher's cancellation scopes are asyncio.timeout
    return "asyncio"


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff waits cost nothing."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_fetcher(sleeps):
    """Build a fetcher whose upstream is ``handler``."""

    def _make(handler, **overrides) -> RetryingFetcher:
        config = RelayConfig(telemetry=False, **overrides)
        return RetryingFetcher(config, client=mock_client(handler), sleep=sleeps)

    return _make


class CountingHandler:
    """Upstream that serves a scripted sequence of answers and counts calls.

    Each item is an ``httpx.Response``, an exception to raise, or a callable
    taking the request. The last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, httpx.Response):
            # fresh copy per call; a response object can only be sent once
            return httpx.Response(item.status_code, headers=item.headers.multi_items(), content=item.content)
        item = item(request)
        if asyncio.iscoroutine(item):
            item = await item
        return item


async def collect_asgi(response, scope=None, receive=None) -> list[dict]:
    """Run an ASGI response against fake send/receive; return sent messages."""
    messages: list[dict] = []

    async def send(message):
        messages.append(message)

    async def never_disconnect():
        await asyncio.Event().wait()

    await response(scope or {"type": "http", "method": "GET"}, receive or never_disconnect, send)
    return messages


def sent_headers(messages: list[dict]) -> list[tuple[str, str]]:
    start = next(m for m in messages if m["type"] == "http.response.start")
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in start["headers"]]


def sent_body(messages: list[dict]) -> bytes:
    return b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")


def header(relayed, name: str) -> str | None:
    """First value of a rendered header, case-insensitive."""
    name = name.lower()
    for key, value in relayed.headers:
        if key.lower() == name:
            return value
    return None


def header_names(relayed) -> set[str]:
    return {key.lower() for key, _ in relayed.headers}
