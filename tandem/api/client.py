"""LLM client with retry, key rotation and cost accounting.

LlmClient.send() is the only way the runtime talks to a model. It
builds the provider payload once and then loops:

- authentication failures mark the key failed and retry immediately
  with the next key (no backoff, no attempt consumed);
- remediated provider quirks retry immediately with the rewritten
  payload;
- retryable errors back off exponentially, honouring retry-after;
- anything else raises.

Every await (HTTP call and backoff sleep) is raced against the turn's
cancellation token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import httpx

from tandem.api.costs import CostSink, CostTracker, cost_for
from tandem.api.credentials import CredentialSource, KeyPool
from tandem.api.errors import (
    ApiError,
    ApiStatusError,
    AuthenticationError,
    CredentialsExhaustedError,
    QuirkRemediated,
)
from tandem.api.providers import LlmRequest, ModelTier, Provider, QuirkMemory, create_provider
from tandem.api.retry import RetryPolicy
from tandem.config import Settings
from tandem.engine.cancellation import CancellationToken
from tandem.messages import NO_CONTENT_MESSAGE, AssistantMessage, TextBlock

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class LlmClient:
    """Sends LlmRequests to the configured provider."""

    def __init__(
        self,
        settings: Settings,
        provider: Provider | None = None,
        credentials: CredentialSource | None = None,
        cost_sink: CostSink | None = None,
        retry: RetryPolicy | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._provider = provider or create_provider(settings.provider, settings.base_url, QuirkMemory())
        self._credentials = credentials or KeyPool.from_settings(settings)
        self._cost_sink = cost_sink or CostTracker()
        self._retry = retry or RetryPolicy.from_settings(settings)
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def cost_sink(self) -> CostSink:
        return self._cost_sink

    async def start(self) -> None:
        """Initialize the httpx client with timeout and connection limits."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=self._provider.base_url,
            headers={"content-type": "application/json"},
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("httpx client initialized (provider: %s, %s)", self._provider.name, self._provider.base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def model_for(self, tier: ModelTier) -> str:
        if tier == ModelTier.SMALL:
            return self._settings.small_model
        return self._settings.model

    async def send(
        self,
        request: LlmRequest,
        token: CancellationToken | None = None,
    ) -> AssistantMessage:
        """Call the model and return its reply as an AssistantMessage.

        Raises ApiError subclasses once retries are exhausted, and
        TurnCancelled if the token fires first.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        token = token or CancellationToken()
        model = request.model or self.model_for(request.tier)
        stream = self._settings.stream if request.stream is None else request.stream
        payload = self._provider.build_payload(
            request, model, request.max_tokens or self._settings.max_tokens, stream
        )

        started = time.monotonic()
        attempt = 0
        remediated: set[str] = set()
        while True:
            token.raise_if_cancelled()
            api_key = self._credentials.get_active_key(request.tier)
            if api_key is None:
                raise CredentialsExhaustedError(f"No usable API key for {request.tier} tier")
            try:
                response = await token.run(self._provider.call(self._http, payload, api_key))
                break
            except AuthenticationError as exc:
                logger.warning("Authentication failed (%s), switching API key", exc)
                self._credentials.mark_failed(api_key, request.tier)
                continue
            except QuirkRemediated as exc:
                if exc.quirk in remediated:
                    raise exc.__cause__ or exc
                remediated.add(exc.quirk)
                continue
            except ApiError as exc:
                attempt += 1
                if attempt > self._retry.max_retries or not self._retry.should_retry(exc):
                    raise
                retry_after = exc.headers.get("retry-after") if isinstance(exc, ApiStatusError) else None
                delay = self._retry.delay(attempt, retry_after)
                logger.warning(
                    "API error (%s), retrying in %.1fs (attempt %d/%d)",
                    exc,
                    delay,
                    attempt,
                    self._retry.max_retries,
                )
                await token.run(self._sleep(delay))

        duration_ms = int((time.monotonic() - started) * 1000)
        resolved_model = response.model or model
        cost_usd = cost_for(resolved_model, response.usage)
        self._cost_sink.record(cost_usd, duration_ms)

        return AssistantMessage(
            content=tuple(response.content) or (TextBlock(text=NO_CONTENT_MESSAGE),),
            model=resolved_model,
            stop_reason=response.stop_reason,
            usage=response.usage,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
        )
