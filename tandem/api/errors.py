"""Provider error taxonomy and user-facing error text."""

from __future__ import annotations

from typing import Any

PROMPT_TOO_LONG_ERROR_MESSAGE = "Prompt is too long"
CREDIT_BALANCE_TOO_LOW_ERROR_MESSAGE = "Credit balance is too low"
INVALID_API_KEY_ERROR_MESSAGE = "Invalid API key · Please check your API key configuration"
API_ERROR_MESSAGE_PREFIX = "API Error"
CREDENTIALS_EXHAUSTED_ERROR_MESSAGE = "All API keys failed authentication · Please check your credentials"


class ApiError(Exception):
    """Base class for provider call failures surfaced by LlmClient."""


class ApiConnectionError(ApiError):
    """Transport-level failure (connect/read timeout, reset). Transient."""


class ApiStatusError(ApiError):
    """Non-2xx response, or an error event inside a 200 stream."""

    def __init__(
        self,
        status: int,
        message: str,
        error_type: str = "",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error_type = error_type
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.body = body

    def __str__(self) -> str:
        if self.error_type:
            return f"{self.status} {self.error_type}: {self.message}"
        return f"{self.status}: {self.message}"


class AuthenticationError(ApiStatusError):
    """401/403 or an authentication_error body. Triggers key rotation."""


class CredentialsExhaustedError(ApiError):
    """Every credential in the pool was rejected."""


class QuirkRemediated(ApiError):
    """Internal signal: the request was rewritten to avoid a provider quirk.

    The client retries immediately, without backoff and without counting
    the attempt.
    """

    def __init__(self, quirk: str) -> None:
        super().__init__(f"remediated provider quirk: {quirk}")
        self.quirk = quirk


def error_message_for(exc: BaseException) -> str:
    """Map a provider failure to the text shown in the terminal assistant message."""
    if isinstance(exc, CredentialsExhaustedError):
        return CREDENTIALS_EXHAUSTED_ERROR_MESSAGE
    if isinstance(exc, AuthenticationError):
        return INVALID_API_KEY_ERROR_MESSAGE
    text = str(exc)
    lowered = text.lower()
    if "prompt is too long" in lowered:
        return PROMPT_TOO_LONG_ERROR_MESSAGE
    if "credit balance is too low" in lowered:
        return CREDIT_BALANCE_TOO_LOW_ERROR_MESSAGE
    if "x-api-key" in lowered or "invalid api key" in lowered:
        return INVALID_API_KEY_ERROR_MESSAGE
    return f"{API_ERROR_MESSAGE_PREFIX}: {text}"
