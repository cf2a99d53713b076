"""Header sanitizing for both directions of the relay."""

from collections.abc import Iterable

import httpx

# Meaningful for one connection only, never forwarded across the relay.
HOP_BY_HOP = frozenset(
    {
        "content-length",
        "transfer-encoding",
        "connection",
        "keep-alive",
        "upgrade",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
    }
)

# Forwarded from the caller to the upstream when present.
FORWARDED_REQUEST_HEADERS = ("user-agent", "accept", "accept-language")


def _connection_tokens(headers: httpx.Headers) -> set[str]:
    """Extra hop-by-hop names listed in the Connection header."""
    tokens = set()
    for value in headers.get_list("connection", split_commas=True):
        token = value.strip().lower()
        if token:
            tokens.add(token)
    return tokens


def _strip(headers: httpx.Headers, extra: Iterable[str] = ()) -> list[tuple[str, str]]:
    drop = HOP_BY_HOP | _connection_tokens(headers) | set(extra)
    return [(k, v) for k, v in headers.multi_items() if k.lower() not in drop]


def filter_request_headers(headers: httpx.Headers) -> httpx.Headers:
    """Filter out headers that shouldn't be forwarded upstream."""
    return httpx.Headers(_strip(headers, extra=("host",)))


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """Filter out headers that don't apply to the relayed response.

    httpx decodes the body before we see it, so content-encoding goes too.
    """
    return _strip(headers, extra=("content-encoding",))


def select_forwarded_headers(
    inbound: httpx.Headers,
    defaults: dict[str, str],
) -> httpx.Headers:
    """Pick the caller headers worth passing on, falling back to defaults."""
    selected = httpx.Headers()
    for name in FORWARDED_REQUEST_HEADERS:
        value = inbound.get(name) or defaults.get(name)
        if value:
            selected[name] = value
    return selected
