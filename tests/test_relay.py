"""Tests for ResponseRelay - header sanitizing, transmission modes, disconnects."""

import asyncio
import itertools
import json

import httpx
import pytest

from urlrelay.errors import FetchError, FetchErrorKind
from urlrelay.headers import HOP_BY_HOP
from urlrelay.models import BodyMode, Failure, RelayedResponse, Success, UpstreamResponse
from urlrelay.relay import BAD_GATEWAY_MESSAGE, ERROR_KIND_HEADER, relay, render, to_response

from .conftest import collect_asgi, header, header_names, sent_body, sent_headers

pytestmark = pytest.mark.anyio


def materialized(status=200, headers=None, body=b"payload") -> UpstreamResponse:
    return UpstreamResponse(status_code=status, headers=httpx.Headers(headers or {}), body=body)


class FakeUpstreamStream:
    """Async byte stream that counts reads and notices being closed."""

    def __init__(self, chunks=None, delay=0.0, fail_on_read=None):
        self.chunks = list(chunks) if chunks is not None else None
        self.delay = delay
        self.fail_on_read = fail_on_read
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        assert not self.closed, "read after the upstream was released"
        if self.chunks is not None and self.reads >= len(self.chunks):
            raise StopAsyncIteration
        self.reads += 1
        await asyncio.sleep(self.delay)
        if self.reads == self.fail_on_read:
            raise httpx.ReadError("upstream reset mid-body")
        if self.chunks is None:
            return b"x" * 16
        return self.chunks[self.reads - 1]

    async def aclose(self):
        self.closed = True


def streamed(stream: FakeUpstreamStream, status=200, headers=None) -> UpstreamResponse:
    return UpstreamResponse(
        status_code=status,
        headers=httpx.Headers(headers or {}),
        stream=stream,
        close=stream.aclose,
    )


HOP_HEADER_VALUES = {
    "content-length": "999",
    "transfer-encoding": "chunked",
    "connection": "close",
    "keep-alive": "timeout=5",
    "upgrade": "h2c",
    "proxy-authenticate": "Basic",
    "proxy-authorization": "Basic c2VjcmV0",
    "te": "trailers",
    "trailers": "Expires",
}

HOP_COMBINATIONS = [
    combo
    for size in (1, 2, 9)
    for combo in itertools.combinations(sorted(HOP_HEADER_VALUES), size)
]


@pytest.mark.parametrize("hop_headers", HOP_COMBINATIONS)
@pytest.mark.parametrize("mode", ["buffered", "chunked"])
def test_hop_by_hop_headers_never_reach_the_caller(hop_headers, mode):
    headers = [("Content-Type", "text/plain"), ("X-Upstream", "yes")]
    headers += [(name.title(), HOP_HEADER_VALUES[name]) for name in hop_headers]
    if mode == "buffered":
        upstream = materialized(headers=headers)
    else:
        upstream = streamed(FakeUpstreamStream([b"a"]), headers=headers)

    relayed = render(Success(upstream))

    names = header_names(relayed)
    leaked = (HOP_BY_HOP - {"content-length"}) & names
    assert not leaked
    assert header(relayed, "x-upstream") == "yes"
    assert header(relayed, "content-type") == "text/plain"
    if mode == "buffered":
        assert header(relayed, "content-length") == "7"
    else:
        assert "content-length" not in names


def test_headers_named_by_connection_are_dropped():
    upstream = materialized(headers=[("Connection", "X-Session-Hint, close"), ("X-Session-Hint", "abc")])

    relayed = render(Success(upstream))

    assert "x-session-hint" not in header_names(relayed)


def test_multi_valued_headers_survive_in_order():
    upstream = materialized(
        headers=[("Set-Cookie", "a=1"), ("Vary", "Accept"), ("Set-Cookie", "b=2")]
    )

    relayed = render(Success(upstream))

    cookies = [v for k, v in relayed.headers if k.lower() == "set-cookie"]
    assert cookies == ["a=1", "b=2"]


def test_buffered_length_is_recomputed_not_trusted():
    body = b"twelve bytes"
    upstream = materialized(headers={"Content-Length": "4096"}, body=body)

    relayed = render(Success(upstream))

    assert relayed.mode is BodyMode.BUFFERED
    assert header(relayed, "content-length") == str(len(body))
    assert [v for k, v in relayed.headers if k == "content-length"] == ["12"]


def test_upstream_status_is_copied_verbatim():
    relayed = render(Success(materialized(status=418, body=b"teapot")))

    assert relayed.status_code == 418


@pytest.mark.parametrize("status", [204, 304])
def test_bodiless_statuses_carry_no_length(status):
    upstream = streamed(FakeUpstreamStream([]), status=status)

    relayed = render(Success(upstream))

    assert relayed.mode is BodyMode.BUFFERED
    assert relayed.body == b""
    assert "content-length" not in header_names(relayed)


def test_lazy_stream_is_relayed_chunked():
    stream = FakeUpstreamStream([b"a", b"b"])

    relayed = render(Success(streamed(stream, headers={"Content-Length": "2"})))

    assert relayed.mode is BodyMode.CHUNKED
    assert relayed.stream is stream
    assert "content-length" not in header_names(relayed)


@pytest.mark.parametrize("kind", list(FetchErrorKind))
def test_failures_render_a_generic_bad_gateway(kind):
    error = FetchError(kind, ConnectionRefusedError("secret internal detail"), attempts=4)

    relayed = render(Failure(error))

    assert relayed.status_code == 502
    assert relayed.mode is BodyMode.BUFFERED
    assert json.loads(relayed.body) == {"error": BAD_GATEWAY_MESSAGE}
    assert b"secret" not in relayed.body
    assert header(relayed, ERROR_KIND_HEADER) == kind.value
    assert header(relayed, "content-length") == str(len(relayed.body))


async def test_buffered_response_sends_exact_length():
    body = b"0123456789" * 100
    messages = await collect_asgi(relay(Success(materialized(body=body))))

    headers = dict(sent_headers(messages))
    assert sent_body(messages) == body
    assert headers["content-length"] == str(len(body))


async def test_chunked_response_forwards_every_byte_without_length():
    chunks = [b"first-", b"second-", b"third"]
    stream = FakeUpstreamStream(chunks)

    messages = await collect_asgi(relay(Success(streamed(stream, headers={"Content-Type": "text/plain"}))))

    headers = dict(sent_headers(messages))
    assert "content-length" not in headers
    assert headers["content-type"] == "text/plain"
    assert sent_body(messages) == b"".join(chunks)
    assert stream.closed


async def test_headers_are_sent_before_any_body():
    stream = FakeUpstreamStream([b"a", b"b"])

    messages = await collect_asgi(relay(Success(streamed(stream))))

    assert messages[0]["type"] == "http.response.start"
    assert all(m["type"] == "http.response.body" for m in messages[1:])


async def test_rendered_headers_replace_starlette_defaults():
    relayed = RelayedResponse(
        status_code=200,
        headers=[("content-type", "image/png"), ("content-length", "3")],
        mode=BodyMode.BUFFERED,
        body=b"png",
    )

    messages = await collect_asgi(to_response(relayed))

    assert sent_headers(messages) == [("content-type", "image/png"), ("content-length", "3")]


async def test_caller_disconnect_mid_stream_stops_upstream_reads():
    stream = FakeUpstreamStream(delay=0.01)  # endless
    response = relay(Success(streamed(stream)))
    first_chunk_sent = asyncio.Event()

    async def send(message):
        if message["type"] == "http.response.body" and message.get("body"):
            first_chunk_sent.set()

    async def receive():
        await first_chunk_sent.wait()
        return {"type": "http.disconnect"}

    await asyncio.wait_for(response({"type": "http", "method": "GET"}, receive, send), timeout=5)

    assert stream.closed
    reads_at_disconnect = stream.reads
    await asyncio.sleep(0.05)
    assert stream.reads == reads_at_disconnect
    assert reads_at_disconnect <= 2


async def test_write_failure_is_swallowed_and_upstream_released():
    closed = []

    async def close():
        closed.append(True)

    relayed = RelayedResponse(
        status_code=200,
        headers=[("content-length", "4")],
        mode=BodyMode.BUFFERED,
        body=b"data",
        close=close,
    )

    async def send(message):
        raise OSError("broken pipe")

    async def receive():
        return {"type": "http.disconnect"}

    await to_response(relayed)({"type": "http", "method": "GET"}, receive, send)

    assert closed == [True]


async def test_upstream_failure_mid_stream_leaves_the_body_unterminated():
    stream = FakeUpstreamStream([b"first-", b"second-", b"third"], fail_on_read=2)

    messages = await collect_asgi(relay(Success(streamed(stream))))

    assert messages[0]["type"] == "http.response.start"
    assert sent_body(messages) == b"first-"
    assert all(m.get("more_body") for m in messages[1:])
    assert stream.closed
