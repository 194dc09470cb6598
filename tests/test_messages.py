"""Tests for the conversation message model and wire conversion."""

from __future__ import annotations

import pytest
from pydantic import TypeAdapter, ValidationError

from tandem.messages import (
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    NO_CONTENT_MESSAGE,
    AssistantMessage,
    Message,
    ProgressMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    Usage,
    block_to_api,
    create_assistant_error_message,
    create_interruption_message,
    create_tool_result_message,
    create_user_message,
    extract_text,
    is_interruption,
    to_api_messages,
    tool_use_blocks,
)
from tests.conftest import make_assistant


class TestConstructors:
    def test_user_message_from_string(self):
        msg = create_user_message("hello")
        assert msg.role == "user"
        assert msg.content == (TextBlock(text="hello"),)
        assert not msg.is_meta

    def test_empty_string_becomes_placeholder(self):
        msg = create_user_message("")
        assert extract_text(msg) == NO_CONTENT_MESSAGE

    def test_messages_are_frozen(self):
        msg = create_user_message("hello")
        with pytest.raises(ValidationError):
            msg.is_meta = True

    def test_error_message_is_terminal(self):
        msg = create_assistant_error_message("API Error: boom")
        assert msg.is_api_error
        assert msg.stop_reason == "error"
        assert extract_text(msg) == "API Error: boom"

    def test_tool_result_message_keeps_order(self):
        msg = create_tool_result_message(
            [ToolResultBlock(tool_use_id="a", content="1"), ToolResultBlock(tool_use_id="b", content="2")]
        )
        assert [b.tool_use_id for b in msg.content] == ["a", "b"]

    def test_discriminated_parse(self):
        adapter = TypeAdapter(Message)
        msg = adapter.validate_python({"type": "user", "content": [{"type": "text", "text": "hi"}]})
        assert isinstance(msg, UserMessage)
        msg = adapter.validate_python({"type": "progress", "tool_use_id": "t1", "text": "working"})
        assert isinstance(msg, ProgressMessage)

    def test_usage_total(self):
        usage = Usage(
            input_tokens=10,
            output_tokens=5,
            cache_creation_input_tokens=3,
            cache_read_input_tokens=2,
        )
        assert usage.total == 20


class TestInterruption:
    def test_plain_interruption(self):
        msg = create_interruption_message()
        assert extract_text(msg) == INTERRUPT_MESSAGE
        assert is_interruption(msg)

    def test_answers_pending_tool_uses(self):
        uses = [ToolUseBlock(id="t1", name="x"), ToolUseBlock(id="t2", name="y")]
        msg = create_interruption_message(uses)
        assert [b.tool_use_id for b in msg.content] == ["t1", "t2"]
        assert all(b.is_error and b.content == INTERRUPT_MESSAGE_FOR_TOOL_USE for b in msg.content)
        assert is_interruption(msg)

    def test_regular_message_is_not_interruption(self):
        assert not is_interruption(create_user_message("hello"))
        assert not is_interruption(make_assistant("hello"))


class TestInspection:
    def test_tool_use_blocks(self):
        msg = make_assistant("thinking", tool_uses=[{"id": "t1", "name": "read_file"}])
        assert [b.id for b in tool_use_blocks(msg)] == ["t1"]
        assert tool_use_blocks(create_user_message("x")) == []

    def test_extract_text_joins_blocks(self):
        msg = AssistantMessage(content=(TextBlock(text="a"), ToolUseBlock(id="t", name="n"), TextBlock(text="b")))
        assert extract_text(msg) == "a\nb"


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


class TestToApiMessages:
    def test_block_to_api_omits_false_is_error(self):
        assert block_to_api(ToolResultBlock(tool_use_id="t", content="ok")) == {
            "type": "tool_result",
            "tool_use_id": "t",
            "content": "ok",
        }
        assert block_to_api(ToolResultBlock(tool_use_id="t", content="bad", is_error=True))["is_error"] is True

    def test_progress_messages_dropped(self):
        conversation = [
            create_user_message("hi"),
            ProgressMessage(tool_use_id="t1", text="50%"),
            make_assistant("hello"),
        ]
        api = to_api_messages(conversation)
        assert [m["role"] for m in api] == ["user", "assistant"]

    def test_consecutive_same_role_merged(self):
        api = to_api_messages([create_user_message("a"), create_user_message("b")])
        assert len(api) == 1
        assert [b["text"] for b in api[0]["content"]] == ["a", "b"]

    def test_reminders_only_in_outbound_copy(self):
        conversation = [create_user_message("question")]
        api = to_api_messages(conversation, ["<system-reminder>\nnote\n</system-reminder>"])
        assert api[0]["content"][0]["text"].startswith("<system-reminder>")
        assert api[0]["content"][1]["text"] == "question"
        # The conversation itself is untouched
        assert conversation[0].content == (TextBlock(text="question"),)

    def test_reminders_follow_tool_results(self):
        conversation = [
            create_user_message("go"),
            make_assistant(tool_uses=[{"id": "t1", "name": "x"}]),
            create_tool_result_message([ToolResultBlock(tool_use_id="t1", content="done")]),
        ]
        api = to_api_messages(conversation, ["reminder"])
        last = api[-1]["content"]
        assert last[0]["type"] == "tool_result"
        assert last[1] == {"type": "text", "text": "reminder"}

    def test_reminders_without_user_message(self):
        api = to_api_messages([make_assistant("hi")], ["reminder"])
        assert api[-1] == {"role": "user", "content": [{"type": "text", "text": "reminder"}]}
