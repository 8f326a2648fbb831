"""Client configuration with validation.

Constraints are enforced at construction time so an invalid configuration
fails before the first request is ever sent.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError


class BaseKey(str, Enum):
    """Logical API endpoints addressable with one client identity."""

    TELEMETRY = "telemetry"
    ERRORS = "errors"
    WAREHOUSE = "warehouse"


# Production endpoints
DEFAULT_BASE_URL = "https://telemetry.betterstack.com"
DEFAULT_ERRORS_BASE_URL = "https://errors.betterstack.com"
DEFAULT_WAREHOUSE_BASE_URL = "https://warehouse.betterstack.com"

# Retry bounds
DEFAULT_RETRY_MAX = 10
MAX_RETRY_MAX = 10
DEFAULT_RETRY_WAIT_MIN_SECONDS = 1.0
DEFAULT_RETRY_WAIT_MAX_SECONDS = 30.0

# Rate limiting
MIN_DEFAULT_BURST = 10
BURST_SECONDS = 2

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

VALID_URL_PATTERN = r"^https?://[^\s/]+(:\d+)?(/[^\s]*)?$"


def clamp_retry_max(value: int) -> int:
    """Bound retry_max to 0..MAX_RETRY_MAX; out-of-range values fall back to the default."""
    if value < 0 or value > MAX_RETRY_MAX:
        return DEFAULT_RETRY_MAX
    return value


def default_burst(rate_limit: float) -> int:
    """Burst size when none is configured: two seconds of requests, at least 10."""
    return max(int(rate_limit * BURST_SECONDS), MIN_DEFAULT_BURST)


@dataclass(frozen=True)
class ClientConfig:
    """Transport configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    Out-of-range retry_max is clamped rather than rejected.
    """

    token: str
    base_url: str = DEFAULT_BASE_URL
    user_agent: str = ""

    # Alternate endpoints; None means "derive from base_url"
    errors_base_url: str | None = None
    warehouse_base_url: str | None = None

    # Retry
    retry_max: int = DEFAULT_RETRY_MAX
    retry_wait_min: float = DEFAULT_RETRY_WAIT_MIN_SECONDS
    retry_wait_max: float = DEFAULT_RETRY_WAIT_MAX_SECONDS

    # Client-side rate limiting (requests/second, 0 = off)
    rate_limit: float = 0
    rate_burst: int = 0

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    base_urls: dict[BaseKey, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Validate configuration and resolve the base URL table."""
        errors: list[str] = []

        if not self.token:
            errors.append("PROVIDER_API_TOKEN is required")

        if not re.match(VALID_URL_PATTERN, self.base_url or ""):
            errors.append(f"PROVIDER_BASE_URL must be an http(s) URL: {self.base_url!r}")
        for name, value in (
            ("PROVIDER_ERRORS_BASE_URL", self.errors_base_url),
            ("PROVIDER_WAREHOUSE_BASE_URL", self.warehouse_base_url),
        ):
            if value is not None and not re.match(VALID_URL_PATTERN, value):
                errors.append(f"{name} must be an http(s) URL: {value!r}")

        if self.retry_wait_min < 0:
            errors.append("PROVIDER_RETRY_WAIT_MIN must not be negative")
        if self.retry_wait_max < self.retry_wait_min:
            errors.append("PROVIDER_RETRY_WAIT_MAX must be >= PROVIDER_RETRY_WAIT_MIN")

        if self.rate_limit < 0:
            errors.append("PROVIDER_RATE_LIMIT must not be negative")
        if self.rate_burst < 0:
            errors.append("PROVIDER_RATE_BURST must not be negative")

        if self.request_timeout <= 0:
            errors.append("PROVIDER_REQUEST_TIMEOUT must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "retry_max", clamp_retry_max(self.retry_max))
        object.__setattr__(self, "base_urls", self._resolve_base_urls())

    def _resolve_base_urls(self) -> dict[BaseKey, str]:
        base = self.base_url.rstrip("/")
        errors_url = DEFAULT_ERRORS_BASE_URL
        warehouse_url = DEFAULT_WAREHOUSE_BASE_URL
        # Non-production primary URL (tests, staging): everything collapses onto it
        if base != DEFAULT_BASE_URL:
            errors_url = base
            warehouse_url = base
        if self.errors_base_url:
            errors_url = self.errors_base_url
        if self.warehouse_base_url:
            warehouse_url = self.warehouse_base_url
        return {
            BaseKey.TELEMETRY: base,
            BaseKey.ERRORS: errors_url.rstrip("/"),
            BaseKey.WAREHOUSE: warehouse_url.rstrip("/"),
        }

    @property
    def effective_burst(self) -> int:
        """Burst size for the limiter (only meaningful when rate_limit > 0)."""
        if self.rate_burst > 0:
            return self.rate_burst
        return default_burst(self.rate_limit)

    def url_for(self, base_key: BaseKey) -> str:
        """Get the base URL for a logical endpoint."""
        return self.base_urls[base_key]

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROVIDER_API_TOKEN: Bearer credential (required)
            PROVIDER_BASE_URL: Primary API base URL (default: production telemetry)
            PROVIDER_ERRORS_BASE_URL: Errors endpoint override (optional)
            PROVIDER_WAREHOUSE_BASE_URL: Warehouse endpoint override (optional)
            PROVIDER_USER_AGENT: User-Agent header value (optional)
            PROVIDER_RETRY_MAX: Retries after the first attempt (default: 10)
            PROVIDER_RETRY_WAIT_MIN: Minimum backoff in seconds (default: 1)
            PROVIDER_RETRY_WAIT_MAX: Maximum backoff in seconds (default: 30)
            PROVIDER_RATE_LIMIT: Requests per second, 0 disables (default: 0)
            PROVIDER_RATE_BURST: Limiter burst, 0 derives from rate (default: 0)
            PROVIDER_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            token=os.environ.get("PROVIDER_API_TOKEN", ""),
            base_url=os.environ.get("PROVIDER_BASE_URL", DEFAULT_BASE_URL),
            user_agent=os.environ.get("PROVIDER_USER_AGENT", ""),
            errors_base_url=os.environ.get("PROVIDER_ERRORS_BASE_URL") or None,
            warehouse_base_url=os.environ.get("PROVIDER_WAREHOUSE_BASE_URL") or None,
            retry_max=get_int("PROVIDER_RETRY_MAX", DEFAULT_RETRY_MAX),
            retry_wait_min=get_float("PROVIDER_RETRY_WAIT_MIN", DEFAULT_RETRY_WAIT_MIN_SECONDS),
            retry_wait_max=get_float("PROVIDER_RETRY_WAIT_MAX", DEFAULT_RETRY_WAIT_MAX_SECONDS),
            rate_limit=get_float("PROVIDER_RATE_LIMIT", 0),
            rate_burst=get_int("PROVIDER_RATE_BURST", 0),
            request_timeout=get_float(
                "PROVIDER_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
        )
