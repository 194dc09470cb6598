"""Retry classification and backoff timing for provider calls.

Retried: connection errors, HTTP 408/409/429, any 5xx, and responses the
provider marks as retryable (x-should-retry: true, overloaded or
rate-limit error bodies). x-should-retry: false always wins. Other 4xx
responses are never retried.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from tandem.api.errors import ApiConnectionError, ApiStatusError

RETRYABLE_STATUSES = frozenset({408, 409, 429})
RETRYABLE_ERROR_TYPES = frozenset({"overloaded_error", "rate_limit_error"})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: min(base * 2**(attempt-1), cap), retry-after wins."""

    max_retries: int = 10
    base_delay: float = 0.5  # seconds
    max_delay: float = 32.0
    retry_after_cap: float = 60.0
    jitter: float = 0.0  # fraction of the delay added at random

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            retry_after_cap=settings.retry_after_cap,
            jitter=settings.retry_jitter,
        )

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, ApiConnectionError):
            return True
        if not isinstance(exc, ApiStatusError):
            return False

        hint = exc.headers.get("x-should-retry")
        if hint == "true":
            return True
        if hint == "false":
            return False

        if exc.error_type in RETRYABLE_ERROR_TYPES:
            return True
        if "rate limit" in exc.message.lower():
            return True

        status = exc.status
        return status in RETRYABLE_STATUSES or status >= 500

    def delay(self, attempt: int, retry_after: str | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        server_delay = parse_retry_after(retry_after)
        if server_delay is not None:
            return min(server_delay, self.retry_after_cap)

        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay = min(delay + random.random() * self.jitter * delay, self.max_delay)
        return delay


def parse_retry_after(value: str | None) -> float | None:
    """Parse a retry-after header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - datetime.now(UTC)).total_seconds()
    if seconds < 0:
        return None
    return seconds
