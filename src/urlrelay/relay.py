"""Relaying fetch outcomes back to the caller.

``render`` settles status, headers and transmission mode for an outcome;
``to_response`` turns that into an ASGI response. Nothing here touches the
body until the server starts sending, and by then the headers are fixed.

Modes:
- BUFFERED: the body is already in memory, content-length is its exact size
- CHUNKED: bytes are forwarded as upstream yields them, with no
  content-length, so the server frames them with chunked encoding
"""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import httpx
from starlette.requests import ClientDisconnect
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from .errors import FetchError, RelayTransportError, UpstreamStreamError
from .headers import filter_response_headers
from .models import BodyMode, Failure, FetchOutcome, RelayedResponse

logger = logging.getLogger(__name__)

BAD_GATEWAY_MESSAGE = "Bad Gateway: Failed to fetch the target URL after multiple retries"

# Carries the failure kind (never the cause) on 502s
ERROR_KIND_HEADER = "x-relay-error"


def allows_body(status_code: int) -> bool:
    """Whether a response with this status may carry a body at all."""
    return status_code >= 200 and status_code not in (204, 304)


def render_failure(error: FetchError) -> RelayedResponse:
    """A 502 with a generic body. The cause stays in the logs."""
    body = json.dumps({"error": BAD_GATEWAY_MESSAGE}).encode()
    return RelayedResponse(
        status_code=502,
        headers=[
            ("content-type", "application/json"),
            ("content-length", str(len(body))),
            (ERROR_KIND_HEADER, error.kind.value),
        ],
        mode=BodyMode.BUFFERED,
        body=body,
    )


def render(outcome: FetchOutcome) -> RelayedResponse:
    """Decide exactly what the caller will get for this outcome."""
    if isinstance(outcome, Failure):
        return render_failure(outcome.error)

    upstream = outcome.response
    status_code = upstream.status_code
    # Upstream framing headers are untrusted; we recompute or drop them.
    headers = filter_response_headers(upstream.headers)
    encoding = upstream.headers.encoding

    if not allows_body(status_code):
        return RelayedResponse(
            status_code=status_code,
            headers=headers,
            mode=BodyMode.BUFFERED,
            body=b"",
            close=upstream.aclose,
            encoding=encoding,
        )

    if upstream.is_materialized:
        body = upstream.body
        headers.append(("content-length", str(len(body))))
        return RelayedResponse(
            status_code=status_code,
            headers=headers,
            mode=BodyMode.BUFFERED,
            body=body,
            close=upstream.aclose,
            encoding=encoding,
        )

    return RelayedResponse(
        status_code=status_code,
        headers=headers,
        mode=BodyMode.CHUNKED,
        stream=upstream.stream,
        close=upstream.aclose,
        encoding=encoding,
    )


async def _send_and_release(
    response: Response,
    send_response: Callable[[], Awaitable[None]],
    on_close: Callable[[], Awaitable[None]] | None,
) -> None:
    try:
        await send_response()
    except (ClientDisconnect, OSError) as e:
        # The caller is gone; there's nobody left to tell.
        logger.warning(f"{RelayTransportError(e)} (status {response.status_code})")
    except UpstreamStreamError as e:
        # Headers already went out; the final empty chunk is never sent.
        logger.warning(f"{e} (status {response.status_code})")
    finally:
        if on_close is not None:
            await on_close()


class RelayResponse(Response):
    """A buffered response that releases the upstream once sent."""

    def __init__(self, content: bytes, status_code: int, on_close=None):
        super().__init__(content=content, status_code=status_code)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await _send_and_release(
            self,
            lambda: super(RelayResponse, self).__call__(scope, receive, send),
            self.on_close,
        )


class RelayStreamingResponse(StreamingResponse):
    """A chunked response that releases the upstream however the stream ends.

    When the caller disconnects, Starlette cancels the streaming task while
    it waits on the next upstream chunk; closing the upstream afterwards
    means nothing keeps reading into the void.
    """

    def __init__(self, content, status_code: int, on_close=None):
        super().__init__(content=content, status_code=status_code)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await _send_and_release(
            self,
            lambda: super(RelayStreamingResponse, self).__call__(scope, receive, send),
            self.on_close,
        )


def _encode_header(value: str, encoding: str) -> bytes:
    try:
        return value.encode(encoding)
    except UnicodeEncodeError:
        return value.encode("utf-8")


async def _guard_upstream(stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    try:
        async for chunk in stream:
            yield chunk
    except httpx.HTTPError as e:
        raise UpstreamStreamError(e) from e


def to_response(relayed: RelayedResponse) -> Response:
    """Build the ASGI response for a rendered outcome."""
    if relayed.mode is BodyMode.BUFFERED:
        response = RelayResponse(relayed.body or b"", relayed.status_code, on_close=relayed.close)
    else:
        response = RelayStreamingResponse(
            _guard_upstream(relayed.stream), relayed.status_code, on_close=relayed.close
        )

    # Replace whatever Starlette inferred; the rendered headers are the whole truth.
    response.raw_headers = [
        (_encode_header(k, "ascii").lower(), _encode_header(v, relayed.encoding))
        for k, v in relayed.headers
    ]
    return response


def _then(
    close: Callable[[], Awaitable[None]] | None,
    after: Callable[[], None],
) -> Callable[[], Awaitable[None]]:
    async def close_then_after():
        try:
            if close is not None:
                await close()
        finally:
            after()

    return close_then_after


def relay(outcome: FetchOutcome, on_finished: Callable[[], None] | None = None) -> Response:
    """Render an outcome and wrap it for the server.

    ``on_finished`` runs once the response is done with the upstream, after
    the last body byte (or the disconnect) in chunked mode.
    """
    relayed = render(outcome)
    if on_finished is not None:
        relayed.close = _then(relayed.close, on_finished)
    logger.debug(
        f"Relaying {relayed.status_code} as {relayed.mode.value} "
        f"with {len(relayed.headers)} headers"
    )
    return to_response(relayed)
