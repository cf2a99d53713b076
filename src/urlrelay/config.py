"""Relay configuration.

Every knob has a typed field and a default here; ``RelayConfig.from_env``
reads the ``RELAY_*`` environment variables on top of those defaults.
"""

import os
from dataclasses import dataclass

from . import __version__
from .errors import ConfigError
from .models import BodyMode

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_RETRIES = 3
# Fixed, not exponential: worst case stays (max_retries + 1) * (timeout + backoff)
DEFAULT_BACKOFF_MS = 1000

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class RelayConfig:
    """Process-wide relay settings.

    Attributes:
        timeout: Per-attempt deadline in seconds.
        max_retries: Retries after the first attempt (so attempts = max_retries + 1).
        backoff: Fixed wait between attempts, in seconds.
        body_mode: Default transmission mode for successful responses.
        retry_predicate: Name of the default soft-failure predicate ("none" for no predicate).
        fail_on_server_error: Treat upstream 5xx as a failed attempt (retried, then 502).
        follow_redirects: Follow upstream redirects instead of relaying them.
        user_agent: User-Agent sent when the caller didn't supply one.
        accept: Accept sent when the caller didn't supply one.
        host: Bind address for the server.
        port: Bind port for the server.
        log_level: Root log level.
        telemetry: Configure logfire and instrument httpx/FastAPI.
    """

    timeout: float = DEFAULT_TIMEOUT_MS / 1000
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: float = DEFAULT_BACKOFF_MS / 1000
    body_mode: BodyMode = BodyMode.BUFFERED
    retry_predicate: str = "none"
    fail_on_server_error: bool = True
    follow_redirects: bool = True
    user_agent: str = f"urlrelay/{__version__}"
    accept: str = "*/*"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    telemetry: bool = True

    def __post_init__(self):
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff < 0:
            raise ConfigError(f"backoff must be >= 0, got {self.backoff}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        try:
            # frozen, so go around __setattr__ to normalise the enum
            object.__setattr__(self, "body_mode", BodyMode(self.body_mode))
        except ValueError:
            raise ConfigError(
                f"body_mode must be one of {[m.value for m in BodyMode]}, got {self.body_mode!r}"
            ) from None
        object.__setattr__(self, "log_level", self.log_level.upper())

    @property
    def default_headers(self) -> dict[str, str]:
        """Fallbacks for the forwarded request headers."""
        return {"user-agent": self.user_agent, "accept": self.accept}

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build a config from RELAY_* environment variables."""
        return cls(
            timeout=_env_int("RELAY_TIMEOUT_MS", DEFAULT_TIMEOUT_MS) / 1000,
            max_retries=_env_int("RELAY_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            backoff=_env_int("RELAY_BACKOFF_MS", DEFAULT_BACKOFF_MS) / 1000,
            body_mode=_env_str("RELAY_BODY_MODE", BodyMode.BUFFERED.value).lower(),
            retry_predicate=_env_str("RELAY_RETRY_PREDICATE", "none"),
            fail_on_server_error=_env_bool("RELAY_FAIL_ON_SERVER_ERROR", True),
            follow_redirects=_env_bool("RELAY_FOLLOW_REDIRECTS", True),
            user_agent=_env_str("RELAY_USER_AGENT", f"urlrelay/{__version__}"),
            accept=_env_str("RELAY_ACCEPT", "*/*"),
            host=_env_str("RELAY_HOST", "0.0.0.0"),
            port=_env_int("RELAY_PORT", 8080),
            log_level=_env_str("RELAY_LOG_LEVEL", "INFO"),
            telemetry=_env_bool("RELAY_TELEMETRY", True),
        )
