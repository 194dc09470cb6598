"""Tests for the provider adapters: payloads, streaming reduction and quirks."""

from __future__ import annotations

import json

import pytest

from tandem.api.errors import ApiConnectionError, ApiStatusError, AuthenticationError
from tandem.api.providers import (
    QUIRK_FIXES,
    TOOL_DESCRIPTION_LIMIT,
    AnthropicProvider,
    LlmRequest,
    OpenAIProvider,
    QuirkMemory,
    create_provider,
    error_from_response,
    model_features,
    to_openai_messages,
)
from tandem.messages import TextBlock, ThinkingBlock, ToolUseBlock

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _lines(events: list) -> object:
    for event in events:
        if isinstance(event, str):
            yield event
        else:
            yield f"data: {json.dumps(event)}"
        yield ""


def _request(**kwargs) -> LlmRequest:
    kwargs.setdefault("messages", [{"role": "user", "content": [{"type": "text", "text": "hi"}]}])
    return LlmRequest(**kwargs)


ANTHROPIC_MESSAGE = {
    "id": "msg_1",
    "type": "message",
    "role": "assistant",
    "model": "claude-sonnet-4-5",
    "content": [
        {"type": "thinking", "thinking": "Let me look.", "signature": "sig"},
        {"type": "text", "text": "Reading the file."},
        {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "a.py"}},
    ],
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 120, "output_tokens": 40, "cache_read_input_tokens": 10},
}

ANTHROPIC_STREAM = [
    "event: message_start",
    {
        "type": "message_start",
        "message": {
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": "claude-sonnet-4-5",
            "content": [],
            "stop_reason": None,
            "usage": {"input_tokens": 120, "output_tokens": 1, "cache_read_input_tokens": 10},
        },
    },
    {"type": "ping"},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "Let me "}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "look."}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "sig"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "content_block_start", "index": 1, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Reading "}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "the file."}},
    {"type": "content_block_stop", "index": 1},
    {
        "type": "content_block_start",
        "index": 2,
        "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {}},
    },
    {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": '{"pa'}},
    {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": 'th": "a.py"}'}},
    {"type": "content_block_stop", "index": 2},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 40}},
    {"type": "message_stop"},
]

OPENAI_COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "model": "gpt-4o",
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "Reading the file.",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "read_file", "arguments": '{"path": "a.py"}'},
                    }
                ],
            },
            "finish_reason": "tool_calls",
        }
    ],
    "usage": {"prompt_tokens": 130, "completion_tokens": 40, "prompt_tokens_details": {"cached_tokens": 10}},
}

OPENAI_STREAM = [
    {"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]},
    {"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"content": "Reading "}}]},
    {"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"content": "the file."}}]},
    {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [
            {
                "index": 0,
                "delta": {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "read_file", "arguments": '{"pa'},
                        }
                    ]
                },
            }
        ],
    },
    {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [
            {"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'th": "a.py"}'}}]}}
        ],
    },
    {"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
    {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [],
        "usage": {"prompt_tokens": 130, "completion_tokens": 40, "prompt_tokens_details": {"cached_tokens": 10}},
    },
    "data: [DONE]",
]


# ---------------------------------------------------------------------------
# Content-block provider
# ---------------------------------------------------------------------------


class TestAnthropicProvider:
    def test_normalise(self):
        response = AnthropicProvider("https://api.test").normalise(ANTHROPIC_MESSAGE)
        assert response.content == [
            ThinkingBlock(thinking="Let me look.", signature="sig"),
            TextBlock(text="Reading the file."),
            ToolUseBlock(id="toolu_1", name="read_file", input={"path": "a.py"}),
        ]
        assert response.stop_reason == "tool_use"
        assert response.usage.input_tokens == 120
        assert response.usage.cache_read_input_tokens == 10

    @pytest.mark.asyncio
    async def test_stream_matches_non_stream(self):
        provider = AnthropicProvider("https://api.test")
        streamed = provider.normalise(await provider.reduce_stream(_lines(ANTHROPIC_STREAM)))
        assert streamed == provider.normalise(ANTHROPIC_MESSAGE)

    @pytest.mark.asyncio
    async def test_stream_error_event(self):
        provider = AnthropicProvider("https://api.test")
        events = [
            {"type": "message_start", "message": {"model": "m", "usage": {}}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        ]
        with pytest.raises(ApiStatusError) as exc_info:
            await provider.reduce_stream(_lines(events))
        assert exc_info.value.status == 529
        assert exc_info.value.error_type == "overloaded_error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider_name", ["anthropic", "openai"])
    async def test_malformed_stream_frame(self, provider_name):
        provider = create_provider(provider_name, "https://api.test")
        with pytest.raises(ApiConnectionError, match="Malformed stream event"):
            await provider.reduce_stream(_lines(['data: {"type": "message_start", "mess']))

    def test_payload(self):
        provider = AnthropicProvider("https://api.test")
        tools = [{"name": "read_file", "description": "Read", "input_schema": {"type": "object"}}]
        payload = provider.build_payload(
            _request(system_prompt=["You are helpful.", "Context."], tools=tools), "claude-x", 1024, True
        )
        assert payload["model"] == "claude-x"
        assert payload["max_tokens"] == 1024
        assert payload["stream"] is True
        assert payload["tools"] == tools
        assert "cache_control" not in payload["system"][0]
        assert payload["system"][-1]["cache_control"] == {"type": "ephemeral"}

    def test_headers(self):
        provider = AnthropicProvider("https://api.test")
        assert provider.headers("sk-ant-api-123")["x-api-key"] == "sk-ant-api-123"
        oauth = provider.headers("sk-ant-oat01-abc")
        assert oauth["authorization"] == "Bearer sk-ant-oat01-abc"
        assert "x-api-key" not in oauth


# ---------------------------------------------------------------------------
# Choice/delta provider
# ---------------------------------------------------------------------------


class TestOpenAIProvider:
    def test_normalise(self):
        response = OpenAIProvider("https://api.test").normalise(OPENAI_COMPLETION)
        assert response.content == [
            TextBlock(text="Reading the file."),
            ToolUseBlock(id="call_1", name="read_file", input={"path": "a.py"}),
        ]
        assert response.stop_reason == "tool_use"
        assert response.usage.input_tokens == 120
        assert response.usage.cache_read_input_tokens == 10
        assert response.usage.output_tokens == 40

    @pytest.mark.asyncio
    async def test_stream_matches_non_stream(self):
        provider = OpenAIProvider("https://api.test")
        streamed = provider.normalise(await provider.reduce_stream(_lines(OPENAI_STREAM)))
        assert streamed == provider.normalise(OPENAI_COMPLETION)

    def test_reasoning_and_bad_arguments(self):
        data = {
            "model": "deepseek",
            "choices": [
                {
                    "message": {
                        "reasoning_content": "hmm",
                        "content": None,
                        "tool_calls": [{"function": {"name": "bash", "arguments": "{not json"}}],
                    },
                    "finish_reason": "length",
                }
            ],
        }
        response = OpenAIProvider("https://api.test").normalise(data)
        thinking, call = response.content
        assert thinking == ThinkingBlock(thinking="hmm")
        assert call.input == {}
        assert call.id.startswith("call_")
        assert response.stop_reason == "max_tokens"

    def test_message_conversion(self):
        messages = [
            {"role": "user", "content": [{"type": "text", "text": "read a.py"}]},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Sure."},
                    {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": "x = 1"},
                    {"type": "tool_result", "tool_use_id": "orphan", "content": "?"},
                    {"type": "text", "text": "thanks"},
                ],
            },
        ]
        out = to_openai_messages(["system text"], messages)
        assert [m["role"] for m in out] == ["system", "user", "assistant", "tool", "user"]
        assert out[2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a.py"}'}
        assert out[3] == {"role": "tool", "tool_call_id": "t1", "content": "x = 1"}
        assert out[4] == {"role": "user", "content": "thanks"}

    def test_payload_for_reasoning_model(self):
        payload = OpenAIProvider("https://api.test").build_payload(_request(), "o1-mini", 1000, True)
        assert payload["max_completion_tokens"] == 1000
        assert "max_tokens" not in payload
        assert payload["stream_options"] == {"include_usage": True}

    def test_headers(self):
        assert OpenAIProvider("https://api.test").headers("sk-1") == {"authorization": "Bearer sk-1"}


class TestQuirks:
    def test_remediate_remembers_and_preapplies(self):
        quirks = QuirkMemory()
        provider = OpenAIProvider("https://compat.test", quirks)
        payload = provider.build_payload(_request(), "gpt-x", 500, False)
        error = ApiStatusError(400, "Unsupported parameter: 'max_tokens'. Use 'max_completion_tokens' instead.")

        assert provider.remediate(payload, error) == "max_completion_tokens"
        assert payload["max_completion_tokens"] == 500
        assert quirks.known("https://compat.test", "gpt-x") == ["max_completion_tokens"]

        again = provider.build_payload(_request(), "gpt-x", 500, False)
        assert "max_tokens" not in again
        # Other models are unaffected
        assert "max_tokens" in provider.build_payload(_request(), "gpt-y", 500, False)

    def test_unknown_error_not_remediated(self):
        provider = OpenAIProvider("https://compat.test")
        payload = provider.build_payload(_request(), "gpt-x", 500, False)
        assert provider.remediate(payload, ApiStatusError(400, "something else")) is None

    def test_fix_that_changes_nothing_is_not_a_remediation(self):
        provider = OpenAIProvider("https://compat.test")
        payload = provider.build_payload(_request(), "gpt-x", 500, False)  # no stream_options
        assert provider.remediate(payload, ApiStatusError(400, "Unrecognized stream_options")) is None

    def test_split_long_tool_descriptions(self):
        provider = OpenAIProvider("https://compat.test")
        description = "\n".join(f"line {i} " + "x" * 90 for i in range(20))
        tools = [{"name": "bash", "description": description, "input_schema": {"type": "object"}}]
        payload = provider.build_payload(_request(system_prompt=["sys"], tools=tools), "gpt-x", 500, False)

        quirk = provider.remediate(
            payload, ApiStatusError(400, f"string too long, expected a string with maximum length {TOOL_DESCRIPTION_LIMIT}")
        )

        assert quirk == "tool_description_length"
        function = payload["tools"][0]["function"]
        assert len(function["description"]) <= TOOL_DESCRIPTION_LIMIT
        assert function["description"].startswith("line 0 ")
        assert payload["messages"][1]["role"] == "system"
        assert "<additional-tool-usage-instructions>" in payload["messages"][1]["content"]
        assert "line 19 " in payload["messages"][1]["content"]

    def test_strip_citations(self):
        _, fix = QUIRK_FIXES["citations"]
        payload = {"messages": [{"role": "user", "content": [{"type": "text", "text": "x", "citations": []}]}]}
        assert fix(payload) is True
        assert payload["messages"][0]["content"][0] == {"type": "text", "text": "x"}
        assert fix(payload) is False


class TestHelpers:
    def test_model_features(self):
        assert model_features("o1")["uses_max_completion_tokens"]
        assert model_features("o3-mini-2025-01-31")["uses_max_completion_tokens"]
        assert not model_features("gpt-4o")["uses_max_completion_tokens"]

    def test_error_from_response(self):
        body = json.dumps({"error": {"type": "invalid_request_error", "message": "bad request"}})
        error = error_from_response(400, {"x-should-retry": "false"}, body.encode())
        assert type(error) is ApiStatusError
        assert error.message == "bad request"
        assert error.error_type == "invalid_request_error"
        assert error.headers["x-should-retry"] == "false"

    @pytest.mark.parametrize(
        "status,body",
        [
            (401, "unauthorized"),
            (400, json.dumps({"error": {"type": "authentication_error", "message": "bad key"}})),
            (400, json.dumps({"error": {"code": "invalid_api_key", "message": "Incorrect key"}})),
            (400, "Invalid API key provided"),
        ],
    )
    def test_auth_errors(self, status, body):
        assert isinstance(error_from_response(status, {}, body), AuthenticationError)

    def test_create_provider(self):
        assert isinstance(create_provider("openai", "https://x"), OpenAIProvider)
        assert isinstance(create_provider("anthropic", "https://x"), AnthropicProvider)
        with pytest.raises(ValueError):
            create_provider("other", "https://x")
