"""Retry predicate routing - determines which soft-failure check a request uses."""

import logging

import httpx

from .models import UpstreamResponse
from .protocol import RetryPredicate

logger = logging.getLogger(__name__)

# Predicate registry - maps names to predicates. None means "never retry a success".
_predicates: dict[str, RetryPredicate | None] = {}

# Default predicate name
DEFAULT_PREDICATE = "none"

# Header a caller uses to pick a predicate per request
PREDICATE_HEADER = "x-relay-retry-on"


def json_retry_flag(response: UpstreamResponse) -> bool:
    """Retry when the body is a JSON object carrying ``"retry": true``."""
    payload = response.json()
    return isinstance(payload, dict) and payload.get("retry") is True


def server_error(response: UpstreamResponse) -> bool:
    """Retry on any 5xx, but relay the last one as-is once retries run out."""
    return response.status_code >= 500


def register_predicate(name: str, predicate: RetryPredicate | None) -> None:
    """Register a predicate by name."""
    _predicates[name] = predicate
    logger.info(f"Registered retry predicate: {name}")


def get_predicate(name: str | None = None) -> RetryPredicate | None:
    """Get a predicate by name, or the default if no name specified."""
    predicate_name = (name or DEFAULT_PREDICATE).lower()

    if predicate_name not in _predicates:
        logger.warning(f"Unknown retry predicate '{predicate_name}', using default")
        predicate_name = DEFAULT_PREDICATE

    return _predicates.get(predicate_name)


def init_predicates() -> None:
    """Initialize built-in predicates. Call at startup."""
    register_predicate("none", None)
    register_predicate("json-retry-flag", json_retry_flag)
    register_predicate("server-error", server_error)
    logger.info(f"Retry predicate registry initialized with {len(_predicates)} predicates")


def available_predicates() -> list[str]:
    return sorted(_predicates)


def get_predicate_from_request(
    headers: httpx.Headers,
    default: str = DEFAULT_PREDICATE,
) -> RetryPredicate | None:
    """Determine which predicate to use for a request.

    Selection order:
    1. X-Relay-Retry-On header (explicit selection)
    2. The configured default
    """
    predicate_name = headers.get(PREDICATE_HEADER)

    if predicate_name:
        logger.debug(f"Retry predicate selected via header: {predicate_name}")
    else:
        predicate_name = default

    return get_predicate(predicate_name)
