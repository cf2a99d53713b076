"""urlrelay command line.

    urlrelay serve --port 8080
    urlrelay fetch https://example.com --retries 1 --mode chunked --show-body
"""

import asyncio
import dataclasses
import sys

import httpx
import typer
import uvicorn

from . import predicates, relay, telemetry
from .app import parse_target
from .config import RelayConfig
from .errors import ClientInputError, ConfigError, UpstreamStreamError
from .fetcher import RetryingFetcher
from .models import BodyMode, Failure

app = typer.Typer(help="A single-hop HTTP relay with bounded retries.", no_args_is_help=True)


def run_server(host: str | None = None, port: int | None = None, reload: bool = False):
    """Run the relay server."""
    config = RelayConfig.from_env()
    uvicorn.run(
        "urlrelay.app:create_app",
        factory=True,
        host=host or config.host,
        port=port or config.port,
        log_level=config.log_level.lower(),
        reload=reload,
    )


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default: RELAY_HOST)"),
    port: int = typer.Option(None, "--port", "-p", help="Bind port (default: RELAY_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Serve the relay over HTTP."""
    run_server(host, port, reload)


async def _fetch_once(config: RelayConfig, url: str, retry_on: str | None, show_body: bool) -> int:
    telemetry.configure(config)
    fetcher = RetryingFetcher(config)
    try:
        request = fetcher.new_request(
            url,
            headers=config.default_headers,
            retry_predicate=predicates.get_predicate(retry_on or config.retry_predicate),
        )
        outcome = await fetcher.fetch(request)
        relayed = relay.render(outcome)
        try:
            typer.echo(
                f"{relayed.status_code} ({relayed.mode.value}, {outcome.attempts} attempt(s))",
                err=True,
            )
            for key, value in relayed.headers:
                typer.echo(f"{key}: {value}", err=True)

            if show_body:
                if relayed.mode is BodyMode.CHUNKED:
                    try:
                        async for chunk in relayed.stream:
                            sys.stdout.buffer.write(chunk)
                    except httpx.HTTPError as e:
                        sys.stdout.buffer.flush()
                        typer.echo(f"Error: {UpstreamStreamError(e)}", err=True)
                        return 1
                else:
                    sys.stdout.buffer.write(relayed.body or b"")
                sys.stdout.buffer.flush()
        finally:
            if relayed.close is not None:
                await relayed.close()
        return 1 if isinstance(outcome, Failure) else 0
    finally:
        await fetcher.close()


@app.command()
def fetch(
    url: str = typer.Argument(..., help="Absolute http(s) URL to fetch"),
    retries: int = typer.Option(None, "--retries", "-r", help="Retries after the first attempt"),
    timeout_ms: int = typer.Option(None, "--timeout-ms", "-t", help="Per-attempt timeout"),
    mode: str = typer.Option(None, "--mode", "-m", help="buffered or chunked"),
    retry_on: str = typer.Option(None, "--retry-on", help="Named retry predicate"),
    show_body: bool = typer.Option(False, "--show-body", help="Write the relayed body to stdout"),
):
    """Fetch one URL through the retry engine, without the server.

    Prints the status line and relayed headers to stderr.
    """
    predicates.init_predicates()
    try:
        parse_target(url)
        if retry_on is not None and retry_on.lower() not in predicates.available_predicates():
            raise ConfigError(
                f"unknown retry predicate '{retry_on}', expected one of "
                f"{', '.join(predicates.available_predicates())}"
            )
        overrides = {"telemetry": False}
        if retries is not None:
            overrides["max_retries"] = retries
        if timeout_ms is not None:
            overrides["timeout"] = timeout_ms / 1000
        if mode is not None:
            overrides["body_mode"] = mode.lower()
        config = dataclasses.replace(RelayConfig.from_env(), **overrides)
    except (ClientInputError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    raise typer.Exit(asyncio.run(_fetch_once(config, url, retry_on, show_body)))


if __name__ == "__main__":
    app()
