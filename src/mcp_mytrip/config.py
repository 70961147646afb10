"""Environment-driven configuration for the tourism client and server."""

import os
from dataclasses import dataclass
from typing import Callable, Optional

from dotenv import load_dotenv

from mcp_mytrip.errors import TourApiConfigError

# Server-only key takes precedence over the client-exposed one
API_KEY_ENV_VARS = ("TOUR_API_KEY", "NEXT_PUBLIC_TOUR_API_KEY")

ApiKeyProvider = Callable[[], str]


def env_api_key() -> str:
    """
    Read the service key from the environment.

    Falls back to a .env file when neither variable is set.

    Raises:
        TourApiConfigError: if no key is configured.
    """
    if not any(os.getenv(name) for name in API_KEY_ENV_VARS):
        load_dotenv()

    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value

    raise TourApiConfigError(
        "Tourism API key is not configured. "
        "Set TOUR_API_KEY or NEXT_PUBLIC_TOUR_API_KEY."
    )


def static_api_key(api_key: str) -> ApiKeyProvider:
    def provider() -> str:
        if not api_key:
            raise TourApiConfigError("Tourism API key must not be empty.")
        return api_key

    return provider


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    # int() reports the offending value in its message
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value is None:
        return default
    if value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class ClientSettings:
    cache_ttl: int = 3600
    rate_limit_calls: int = 10
    rate_limit_period: int = 1
    concurrency_limit: int = 10
    max_retries: int = 3
    timeout: float = 10.0
    stats_batch_timeout: Optional[float] = 60.0


def load_settings() -> ClientSettings:
    """
    Build client settings from MYTRIP_* environment variables.

    Raises:
        ValueError: if a numeric variable cannot be parsed.
    """
    defaults = ClientSettings()
    return ClientSettings(
        cache_ttl=_env_int("MYTRIP_CACHE_TTL", defaults.cache_ttl),
        rate_limit_calls=_env_int("MYTRIP_RATE_LIMIT_CALLS", defaults.rate_limit_calls),
        rate_limit_period=_env_int(
            "MYTRIP_RATE_LIMIT_PERIOD", defaults.rate_limit_period
        ),
        concurrency_limit=_env_int(
            "MYTRIP_CONCURRENCY_LIMIT", defaults.concurrency_limit
        ),
        max_retries=_env_int("MYTRIP_MAX_RETRIES", defaults.max_retries),
        timeout=_env_float("MYTRIP_TIMEOUT", defaults.timeout) or defaults.timeout,
        stats_batch_timeout=_env_float(
            "MYTRIP_STATS_BATCH_TIMEOUT", defaults.stats_batch_timeout
        ),
    )
