"""urlrelay - FastAPI application.

Fetches whatever the ``url`` query parameter points at and relays it back.
"""

import logging
from contextlib import asynccontextmanager

import httpx
import logfire
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from . import predicates, relay, telemetry
from .config import RelayConfig
from .errors import ClientInputError, FetchError, FetchErrorKind
from .fetcher import RetryingFetcher
from .headers import select_forwarded_headers
from .models import BodyMode, Failure, Success

logger = logging.getLogger(__name__)

# Header a caller uses to pick buffered or chunked relay per request
BODY_MODE_HEADER = "x-relay-body-mode"


def parse_target(raw: str | None) -> httpx.URL:
    """Validate the target URL. Only absolute http(s) URLs with a host pass."""
    if raw is None or not raw.strip():
        raise ClientInputError("Missing url query parameter")
    try:
        url = httpx.URL(raw.strip())
    except httpx.InvalidURL as e:
        raise ClientInputError(f"Malformed url: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ClientInputError(f"Not an absolute http(s) url: {raw!r}")
    return url


def select_body_mode(headers: httpx.Headers, default: BodyMode) -> BodyMode:
    raw = headers.get(BODY_MODE_HEADER)
    if not raw:
        return default
    try:
        return BodyMode(raw.strip().lower())
    except ValueError:
        logger.warning(f"Unknown body mode '{raw}', using {default.value}")
        return default


def not_found() -> JSONResponse:
    return JSONResponse({"error": "Not Found"}, status_code=404)


async def relay_request(request: Request, fetcher: RetryingFetcher, config: RelayConfig) -> Response:
    """Fetch the requested target and relay the result."""
    try:
        target = parse_target(request.query_params.get("url"))
    except ClientInputError as e:
        logger.info(f"Rejected request: {e}")
        return not_found()

    inbound = httpx.Headers(request.headers.raw)
    fetch_request = fetcher.new_request(
        str(target),
        headers=select_forwarded_headers(inbound, config.default_headers),
        retry_predicate=predicates.get_predicate_from_request(inbound, config.retry_predicate),
        body_mode=select_body_mode(inbound, config.body_mode),
    )

    span = logfire.span(
        "relay {method} {host}",
        method=fetch_request.method,
        host=target.host,
        mode=fetch_request.body_mode.value,
    )
    span.__enter__()

    try:
        try:
            outcome = await fetcher.fetch(fetch_request)
            span.set_attribute("attempts", outcome.attempts)
        except FetchError as e:
            outcome = Failure(e)
            span.set_attribute("attempts", e.attempts)
        except Exception as e:
            # Outside the attempt loop, so there is no attempt count worth reporting.
            logger.exception(f"Unexpected error fetching {target}")
            span.record_exception(e)
            outcome = Failure(FetchError(FetchErrorKind.NETWORK_FAILURE, e, attempts=1))

        if isinstance(outcome, Failure):
            span.set_level("error")

        # Keep the span open through streaming
        streaming = isinstance(outcome, Success) and not outcome.response.is_materialized
        if streaming:
            response = relay.relay(outcome, on_finished=lambda: span.__exit__(None, None, None))
        else:
            response = relay.relay(outcome)
        span.set_attribute("http.status_code", response.status_code)
    except BaseException as e:
        span.record_exception(e)
        span.set_level("error")
        span.__exit__(None, None, None)
        raise

    if not streaming:
        span.__exit__(None, None, None)
    return response


def create_app(config: RelayConfig | None = None, client: httpx.AsyncClient | None = None) -> FastAPI:
    """Build the relay application.

    Args:
        config: Relay settings; read from the environment when omitted
        client: Upstream HTTP client; a pooled one is created when omitted
    """
    config = config or RelayConfig.from_env()
    telemetry.configure(config)
    predicates.init_predicates()
    fetcher = RetryingFetcher(config, client=client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info(
            f"urlrelay is starting up (timeout={config.timeout}s, "
            f"retries={config.max_retries}, mode={config.body_mode.value})"
        )
        yield
        logger.info("urlrelay is shutting down...")
        await fetcher.close()

    app = FastAPI(
        title="urlrelay",
        description="A single-hop HTTP relay with bounded retries.",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.fetcher = fetcher
    telemetry.instrument_app(app, config)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "urlrelay"}

    @app.get("/{path:path}")
    async def handle_request(request: Request, path: str):
        """Relay the target named by the url query parameter."""
        return await relay_request(request, fetcher, config)

    return app
