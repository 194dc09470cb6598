"""Provider access: requests, retries, credentials and costs."""

from tandem.api.client import LlmClient
from tandem.api.costs import CostSink, CostTracker, cost_for
from tandem.api.credentials import CredentialSource, KeyPool
from tandem.api.errors import (
    ApiConnectionError,
    ApiError,
    ApiStatusError,
    AuthenticationError,
    CredentialsExhaustedError,
    QuirkRemediated,
    error_message_for,
)
from tandem.api.providers import (
    AnthropicProvider,
    LlmRequest,
    ModelTier,
    OpenAIProvider,
    ProviderResponse,
    QuirkMemory,
)
from tandem.api.retry import RetryPolicy

__all__ = [
    "AnthropicProvider",
    "ApiConnectionError",
    "ApiError",
    "ApiStatusError",
    "AuthenticationError",
    "CostSink",
    "CostTracker",
    "CredentialSource",
    "CredentialsExhaustedError",
    "KeyPool",
    "LlmClient",
    "LlmRequest",
    "ModelTier",
    "OpenAIProvider",
    "ProviderResponse",
    "QuirkMemory",
    "QuirkRemediated",
    "RetryPolicy",
    "cost_for",
    "error_message_for",
]
