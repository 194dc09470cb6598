"""Automatic context compression.

When a conversation reaches threshold_ratio of the context window it is
replaced by a notice, an LLM-written summary and copies of the files the
agent read most recently. Compression is best-effort: any failure leaves
the original conversation in place. Cancellation is not a failure and
propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from tandem.api.providers import LlmRequest
from tandem.config import Settings
from tandem.engine.cancellation import CancellationToken, TurnCancelled
from tandem.messages import (
    AssistantMessage,
    ProgressMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    UserMessage,
    create_assistant_message,
    create_user_message,
    extract_text,
    to_api_messages,
)
from tandem.tools.builtin import add_line_numbers

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with creating comprehensive conversation summaries "
    "that preserve all essential context for continuing development work."
)

COMPRESSION_PROMPT = """\
Please provide a comprehensive summary of our conversation structured as follows:

## Technical Context
Development environment, tools, frameworks, and configurations in use. Programming languages, libraries, and technical constraints. File structure, directory organization, and project architecture.

## Project Overview
Main project goals, features, and scope. Key components, modules, and their relationships. Data models, APIs, and integration patterns.

## Code Changes
Files created, modified, or analyzed during our conversation. Specific code implementations, functions, and algorithms added. Configuration changes and structural modifications.

## Debugging & Issues
Problems encountered and their root causes. Solutions implemented and their effectiveness. Error messages, logs, and diagnostic information.

## Current Status
What we just completed successfully. Current state of the codebase and any ongoing work. Test results, validation steps, and verification performed.

## Pending Tasks
Immediate next steps and priorities. Planned features, improvements, and refactoring. Known issues, technical debt, and areas needing attention.

## User Preferences
Coding style, formatting, and organizational preferences. Communication patterns and feedback style. Tool choices and workflow preferences.

## Key Decisions
Important technical decisions made and their rationale. Alternative approaches considered and why they were rejected. Trade-offs accepted and their implications.

Focus on information essential for continuing the conversation effectively, including specific details about code, files, errors, and plans."""

COMPACTION_NOTICE = "Context automatically compressed due to token limit. Essential information preserved."

MIN_MESSAGES = 3
_RECOVERY_TOKEN_RATIO = 0.25


class CompactionError(Exception):
    """Compression produced no usable conversation."""


class Summarizer(Protocol):
    async def send(self, request: LlmRequest, token: CancellationToken | None = None) -> AssistantMessage: ...


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


def message_chars(message: Any) -> int:
    """Characters of model-visible content in a message."""
    if isinstance(message, ProgressMessage):
        return 0
    total = 0
    for block in message.content:
        if isinstance(block, TextBlock):
            total += len(block.text)
        elif isinstance(block, ThinkingBlock):
            total += len(block.thinking)
        elif isinstance(block, ToolUseBlock):
            total += len(block.name) + len(str(block.input))
        elif isinstance(block, ToolResultBlock):
            total += len(block.content)
    return total


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with the chars/4 heuristic and moves towards the observed
    ratio (EMA, alpha=0.1) as real usage figures come in. Observations
    are clamped to [MIN_RATIO, MAX_RATIO]; samples smaller than
    MIN_CALIBRATION_CHARS are ignored.
    """

    MIN_RATIO = 0.15
    MAX_RATIO = 0.5
    MIN_CALIBRATION_CHARS = 2_000

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str) -> int:
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Any) -> int:
        if isinstance(message, ProgressMessage):
            return 0
        return max(1, int(message_chars(message) * self._ratio)) + 4

    def estimate_messages(self, messages: list[Any]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars < self.MIN_CALIBRATION_CHARS or actual_tokens <= 0:
            return
        observed = min(self.MAX_RATIO, max(self.MIN_RATIO, actual_tokens / input_chars))
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


# ------------------------------------------------------------------
# File recovery
# ------------------------------------------------------------------


@dataclass(frozen=True)
class RecoveryBudget:
    max_files: int = 5
    max_tokens_per_file: int = 10_000
    max_total_tokens: int = 50_000


@dataclass(frozen=True)
class RecoveredFile:
    path: str
    content: str
    tokens: int
    truncated: bool


def recovery_message(file: RecoveredFile) -> UserMessage:
    suffix = " [truncated]" if file.truncated else ""
    return create_user_message(
        f"**Recovered File: {file.path}**\n\n```\n{add_line_numbers(file.content)}\n```\n\n"
        f"*Automatically recovered ({file.tokens} tokens){suffix}*",
        is_meta=True,
    )


# ------------------------------------------------------------------
# Compactor
# ------------------------------------------------------------------


class Compactor:
    """Replaces an oversized conversation with summary + recovered files."""

    def __init__(
        self,
        client: Summarizer,
        session: Any,  # SessionContext
        *,
        threshold_ratio: float = 0.92,
        context_limit: int = 200_000,
        budget: RecoveryBudget | None = None,
        enabled: bool = True,
        model: str | None = None,
    ) -> None:
        self._client = client
        self._session = session
        self.threshold_ratio = threshold_ratio
        self.context_limit = context_limit
        self.budget = budget or RecoveryBudget()
        self.enabled = enabled
        self.model = model
        self.estimator = TokenEstimator()

    @classmethod
    def from_settings(cls, client: Summarizer, session: Any, settings: Settings) -> Compactor:
        return cls(
            client,
            session,
            threshold_ratio=settings.compaction_threshold_ratio,
            context_limit=settings.context_limit,
            budget=RecoveryBudget(
                max_files=settings.recovery_max_files,
                max_tokens_per_file=settings.recovery_max_tokens_per_file,
                max_total_tokens=settings.recovery_max_total_tokens,
            ),
            enabled=settings.compaction_enabled,
            model=settings.compaction_model or None,
        )

    @property
    def threshold(self) -> float:
        return self.threshold_ratio * self.context_limit

    def count_tokens(self, messages: list[Any]) -> int:
        """Provider-reported usage of the last answered request plus an
        estimate for everything appended after it."""
        for i in range(len(messages) - 1, -1, -1):
            message = messages[i]
            if isinstance(message, AssistantMessage) and message.usage.total > 0:
                return message.usage.total + self.estimator.estimate_messages(messages[i + 1 :])
        return self.estimator.estimate_messages(messages)

    def should_compress(self, messages: list[Any]) -> bool:
        if not self.enabled or len(messages) < MIN_MESSAGES:
            return False
        return self.count_tokens(messages) >= self.threshold

    async def maybe_compress(
        self,
        messages: list[Any],
        token: CancellationToken | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> tuple[list[Any], bool]:
        """Return (conversation, did_compress). Never raises except TurnCancelled."""
        if not self.should_compress(messages):
            return messages, False

        tokens_before = self.count_tokens(messages)
        start_time = time.monotonic()
        try:
            compacted = await self._compress(messages, token, tools)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.error("Compaction failed, continuing with original conversation: %s", e)
            return messages, False

        self._session.reset()
        logger.info(
            "Compacted conversation: %d messages (~%d tokens) -> %d messages (~%d tokens) in %d ms",
            len(messages),
            tokens_before,
            len(compacted),
            self.count_tokens(compacted),
            int((time.monotonic() - start_time) * 1000),
        )
        return compacted, True

    async def _compress(
        self,
        messages: list[Any],
        token: CancellationToken | None,
        tools: list[dict[str, Any]] | None,
    ) -> list[Any]:
        summary = await self._summarize(messages, token, tools)
        recovered = await self.select_files()

        head = [create_user_message(COMPACTION_NOTICE, is_meta=True), summary]
        tail = [recovery_message(f) for f in recovered]

        while tail and self.count_tokens(head + tail) >= self.threshold:
            dropped = tail.pop()
            logger.warning("Dropping recovered file to fit context: %s", extract_text(dropped)[:80])
        compacted = head + tail
        if self.count_tokens(compacted) >= self.threshold:
            raise CompactionError("Summary alone exceeds the compaction threshold")
        return compacted

    async def _summarize(
        self,
        messages: list[Any],
        token: CancellationToken | None,
        tools: list[dict[str, Any]] | None,
    ) -> AssistantMessage:
        request = LlmRequest(
            messages=to_api_messages([*messages, create_user_message(COMPRESSION_PROMPT)]),
            system_prompt=[SUMMARY_SYSTEM_PROMPT],
            tools=list(tools or []),
            model=self.model,
        )
        response = await self._client.send(request, token)
        summary = extract_text(response).strip()
        if not summary:
            raise CompactionError("Summary response did not contain text content")

        return create_assistant_message(
            summary,
            model=response.model,
            stop_reason=response.stop_reason,
            usage=Usage(output_tokens=response.usage.output_tokens),
            cost_usd=response.cost_usd,
            duration_ms=response.duration_ms,
        )

    async def select_files(self) -> list[RecoveredFile]:
        """Most recently read files under the per-file and total token caps."""
        budget = self.budget
        results: list[RecoveredFile] = []
        total = 0
        for info in self._session.files.get_important_files(budget.max_files):
            try:
                content = await asyncio.to_thread(Path(info.path).read_text, encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Failed to read file for recovery: %s (%s)", info.path, e)
                continue

            estimated = math.ceil(len(content) * _RECOVERY_TOKEN_RATIO)
            truncated = estimated > budget.max_tokens_per_file
            if truncated:
                content = content[: int(budget.max_tokens_per_file / _RECOVERY_TOKEN_RATIO)]
            tokens = min(estimated, budget.max_tokens_per_file)

            if total + tokens > budget.max_total_tokens:
                break
            total += tokens
            results.append(RecoveredFile(info.path, content, tokens, truncated))
        return results
