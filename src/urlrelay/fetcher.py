"""Outbound fetching with bounded retries and per-attempt timeouts.

Each attempt runs inside its own ``asyncio.timeout`` scope. When the scope
expires the in-flight request is cancelled and the attempt counts as a
timeout; the scope (and any half-open upstream response) is torn down before
the backoff sleep, so attempts never overlap.

Retry policy:
- transport errors (connect, DNS, reset, protocol) and timeouts are retried
- upstream 5xx is retried too while ``fail_on_server_error`` is on
- a retry predicate may ask for another attempt on an HTTP success
- the wait between attempts is fixed, not exponential
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from .config import RelayConfig
from .errors import FetchError, FetchErrorKind
from .headers import filter_request_headers
from .models import (
    BodyMode,
    Failure,
    FetchOutcome,
    FetchRequest,
    Success,
    UpstreamResponse,
)
from .protocol import RetryPredicate

logger = logging.getLogger(__name__)

# Failures worth another attempt. httpx.TimeoutException is a TransportError.
RETRYABLE_ERRORS = (httpx.TransportError, httpx.HTTPStatusError, TimeoutError)

TIMEOUT_ERRORS = (TimeoutError, httpx.TimeoutException)


@dataclass
class _AttemptResult:
    response: UpstreamResponse
    retry: bool = False


class RetryingFetcher:
    """Fetches a URL, retrying within a fixed budget.

    Holds a pooled ``httpx.AsyncClient`` and the process config, nothing
    request-specific. ``fetch`` never raises for upstream conditions; it
    returns a ``Success`` or a ``Failure``.
    """

    def __init__(
        self,
        config: RelayConfig,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout))
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client, if we created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def new_request(
        self,
        url: str,
        headers: httpx.Headers | dict | None = None,
        retry_predicate: RetryPredicate | None = None,
        body_mode: BodyMode | None = None,
    ) -> FetchRequest:
        """A GET for ``url`` using the configured timeout and retry budget."""
        return FetchRequest(
            url=url,
            headers=httpx.Headers(headers or {}),
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
            retry_predicate=retry_predicate,
            body_mode=body_mode or self.config.body_mode,
        )

    async def fetch(self, request: FetchRequest) -> FetchOutcome:
        """Run the attempt sequence for one request to a terminal outcome."""
        client = await self.get_client()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(request.max_attempts),
            wait=wait_fixed(self.config.backoff),
            retry=(
                retry_if_exception_type(RETRYABLE_ERRORS)
                | retry_if_result(lambda result: result.retry)
            ),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )

        try:
            result = await retrying(self._attempt, request, client)
        except RetryError as e:
            last = e.last_attempt
            if not last.failed:
                # Predicate still unhappy on the final attempt; relay what we have.
                result = last.result()
                logger.warning(
                    f"Retry predicate still matched for {request.url} after "
                    f"{last.attempt_number} attempts; relaying last response"
                )
                return Success(result.response, attempts=last.attempt_number)
            error = self._classify(last.exception(), last.attempt_number, request.max_attempts)
            logger.error(f"Failed to fetch {request.url}: {error}")
            return Failure(error)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            error = FetchError(FetchErrorKind.NETWORK_FAILURE, e, attempts)
            logger.error(f"Failed to fetch {request.url}: {error}")
            return Failure(error)
        except Exception as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.exception(f"Unexpected error fetching {request.url} on attempt {attempts}")
            return Failure(FetchError(FetchErrorKind.NETWORK_FAILURE, e, attempts))

        attempts = retrying.statistics.get("attempt_number", 1)
        logger.info(
            f"Fetched {request.url}: {result.response.status_code} "
            f"after {attempts} attempt(s)"
        )
        return Success(result.response, attempts=attempts)

    async def _attempt(self, request: FetchRequest, client: httpx.AsyncClient) -> _AttemptResult:
        """One attempt, bounded by its own cancellation scope."""
        # The predicate needs the body, so it forces this attempt to be read in full.
        materialize = request.body_mode is BodyMode.BUFFERED or request.retry_predicate is not None
        outbound = client.build_request(
            request.method,
            request.url,
            headers=filter_request_headers(request.headers),
            content=request.content,
            timeout=httpx.Timeout(request.timeout),
        )

        response = None
        try:
            async with asyncio.timeout(request.timeout):
                response = await client.send(
                    outbound,
                    stream=True,
                    follow_redirects=self.config.follow_redirects,
                )
                if self.config.fail_on_server_error and response.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"Upstream answered {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                if materialize:
                    await response.aread()
        except TimeoutError:
            logger.warning(f"Request to {request.url} timed out after {request.timeout}s")
            if response is not None:
                await response.aclose()
            raise
        except BaseException:
            if response is not None:
                await response.aclose()
            raise

        upstream = UpstreamResponse.from_httpx(response, materialized=materialize)
        if request.retry_predicate is None:
            return _AttemptResult(upstream)

        try:
            retry = bool(request.retry_predicate(upstream))
        except BaseException:
            await upstream.aclose()
            raise
        if retry:
            # Body is already in memory; only the connection goes.
            await upstream.aclose()
        return _AttemptResult(upstream, retry=retry)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        request = retry_state.args[0]
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            reason = repr(outcome.exception())
        else:
            reason = "retry predicate matched"
        logger.warning(
            f"Request to {request.url} failed ({reason}). "
            f"Retrying... ({retry_state.attempt_number}/{request.max_retries})"
        )

    @staticmethod
    def _classify(cause: BaseException | None, attempts: int, max_attempts: int) -> FetchError:
        if max_attempts > 1:
            kind = FetchErrorKind.RETRIES_EXHAUSTED
        elif isinstance(cause, TIMEOUT_ERRORS):
            kind = FetchErrorKind.TIMEOUT
        else:
            kind = FetchErrorKind.NETWORK_FAILURE
        return FetchError(kind, cause, attempts)
