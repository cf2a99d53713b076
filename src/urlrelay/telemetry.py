"""Logging and tracing setup.

Module code logs through ``logging.getLogger(__name__)``; this routes those
records into logfire and instruments httpx and FastAPI so every upstream
attempt shows up as a span under its inbound request.
"""

import logging

import logfire
from fastapi import FastAPI

from . import __version__
from .config import RelayConfig


def configure(config: RelayConfig) -> None:
    """Initialise logging, and logfire when telemetry is enabled."""
    # Suppress harmless OTel context warnings from async streaming handlers
    logging.getLogger("opentelemetry.context").setLevel(logging.CRITICAL)

    if not config.telemetry:
        # Spans still work, they just go nowhere.
        logfire.configure(send_to_logfire=False, console=False)
        logging.basicConfig(level=config.log_level)
        return

    # Exports only when LOGFIRE_TOKEN is set; otherwise this is local-only.
    logfire.configure(
        service_name="urlrelay",
        service_version=__version__,
        send_to_logfire="if-token-present",
    )
    logging.basicConfig(level=config.log_level, handlers=[logfire.LogfireLoggingHandler()])
    logfire.instrument_httpx()


def instrument_app(app: FastAPI, config: RelayConfig) -> None:
    if config.telemetry:
        logfire.instrument_fastapi(app)
