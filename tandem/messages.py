"""Conversation message model.

Messages are immutable pydantic models discriminated on ``type``:
user, assistant and progress. The conversation is an append-only list
of these owned by the orchestrator for one turn.

to_api_messages() turns a conversation into the content-block wire
shape used by every provider adapter (the OpenAI adapter converts from
it). Progress messages never reach the wire.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

INTERRUPT_MESSAGE = "[Request interrupted by user]"
INTERRUPT_MESSAGE_FOR_TOOL_USE = "[Request interrupted by user for tool use]"
NO_CONTENT_MESSAGE = "(no content)"


def _new_id() -> str:
    return str(uuid.uuid4())


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(_Frozen):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_Frozen):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class ToolUseBlock(_Frozen):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_Frozen):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Usage(_Frozen):
    """Token usage reported by the provider for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class UserMessage(_Frozen):
    type: Literal["user"] = "user"
    id: str = Field(default_factory=_new_id)
    content: tuple[ContentBlock, ...]
    is_meta: bool = False

    @property
    def role(self) -> str:
        return "user"


class AssistantMessage(_Frozen):
    type: Literal["assistant"] = "assistant"
    id: str = Field(default_factory=_new_id)
    content: tuple[ContentBlock, ...]
    model: str = ""
    stop_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)
    cost_usd: float = 0.0
    duration_ms: int = 0
    is_api_error: bool = False

    @property
    def role(self) -> str:
        return "assistant"


class ProgressMessage(_Frozen):
    """Intermediate output from a running tool. Never sent to the model."""

    type: Literal["progress"] = "progress"
    id: str = Field(default_factory=_new_id)
    tool_use_id: str
    text: str

    @property
    def role(self) -> str:
        return "progress"


Message = Annotated[
    Union[UserMessage, AssistantMessage, ProgressMessage],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def _as_blocks(content: str | Sequence[Any]) -> tuple[Any, ...]:
    if isinstance(content, str):
        return (TextBlock(text=content or NO_CONTENT_MESSAGE),)
    return tuple(content)


def create_user_message(content: str | Sequence[Any], *, is_meta: bool = False) -> UserMessage:
    return UserMessage(content=_as_blocks(content), is_meta=is_meta)


def create_assistant_message(content: str | Sequence[Any], **fields: Any) -> AssistantMessage:
    return AssistantMessage(content=_as_blocks(content), **fields)


def create_assistant_error_message(text: str) -> AssistantMessage:
    """Terminal assistant message standing in for a failed provider call."""
    return AssistantMessage(
        content=(TextBlock(text=text),),
        stop_reason="error",
        is_api_error=True,
    )


def create_tool_result_message(results: Iterable[ToolResultBlock]) -> UserMessage:
    """One user message carrying every tool result of a round."""
    return UserMessage(content=tuple(results))


def create_interruption_message(tool_uses: Sequence[ToolUseBlock] = ()) -> UserMessage:
    """Interruption marker appended when a turn is cancelled.

    When the last assistant message requested tools, the marker answers
    each pending tool use so the conversation stays well-formed for the
    next request.
    """
    if tool_uses:
        return UserMessage(
            content=tuple(
                ToolResultBlock(
                    tool_use_id=block.id,
                    content=INTERRUPT_MESSAGE_FOR_TOOL_USE,
                    is_error=True,
                )
                for block in tool_uses
            )
        )
    return UserMessage(content=(TextBlock(text=INTERRUPT_MESSAGE),))


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def tool_use_blocks(message: Any) -> list[ToolUseBlock]:
    if not isinstance(message, AssistantMessage):
        return []
    return [b for b in message.content if isinstance(b, ToolUseBlock)]


def extract_text(message: Any) -> str:
    """Concatenate the text blocks of a message."""
    if isinstance(message, ProgressMessage):
        return message.text
    return "\n".join(b.text for b in message.content if isinstance(b, TextBlock))


def is_interruption(message: Any) -> bool:
    if not isinstance(message, UserMessage):
        return False
    for block in message.content:
        if isinstance(block, TextBlock) and block.text == INTERRUPT_MESSAGE:
            return True
        if isinstance(block, ToolResultBlock) and block.content == INTERRUPT_MESSAGE_FOR_TOOL_USE:
            return True
    return False


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def block_to_api(block: Any) -> dict[str, Any]:
    data = block.model_dump()
    if isinstance(block, ToolResultBlock) and not block.is_error:
        data.pop("is_error")
    return data


def to_api_messages(
    messages: Sequence[Any],
    reminders: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Convert a conversation to content-block wire messages.

    Progress messages are dropped and consecutive messages with the same
    role are merged (providers require alternation). Reminder texts are
    prepended to the last user message of the outbound copy only, as
    dedicated text blocks; the conversation itself is never touched.
    """
    api_messages: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, ProgressMessage):
            continue
        blocks = [block_to_api(b) for b in message.content]
        if not blocks:
            continue
        if api_messages and api_messages[-1]["role"] == message.role:
            api_messages[-1]["content"].extend(blocks)
        else:
            api_messages.append({"role": message.role, "content": blocks})

    if reminders:
        reminder_blocks = [{"type": "text", "text": text} for text in reminders]
        for api_message in reversed(api_messages):
            if api_message["role"] == "user":
                # Tool results must lead a user message; reminders follow them.
                content = api_message["content"]
                results = [b for b in content if b.get("type") == "tool_result"]
                rest = [b for b in content if b.get("type") != "tool_result"]
                if results:
                    api_message["content"] = results + reminder_blocks + rest
                else:
                    api_message["content"] = reminder_blocks + rest
                break
        else:
            api_messages.append({"role": "user", "content": reminder_blocks})
    return api_messages
