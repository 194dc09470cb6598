"""Provider adapters for the two response shapes.

AnthropicProvider speaks the content-block Messages API. OpenAIProvider
speaks the choice/delta chat-completions API. Each adapter reduces a
streamed response to the same dict its non-streaming endpoint returns,
then runs one normaliser over it, so both paths produce identical
ProviderResponse values.

OpenAI-compatible backends differ in small ways ("quirks"). When an
error message reveals one, the adapter rewrites the payload, remembers
the quirk for (base_url, model) and raises QuirkRemediated so the client
retries immediately. Remembered quirks are pre-applied to later payloads.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from tandem.api.errors import (
    ApiConnectionError,
    ApiStatusError,
    AuthenticationError,
    QuirkRemediated,
)
from tandem.messages import TextBlock, ThinkingBlock, ToolUseBlock, Usage

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

# In-stream error types have no HTTP status of their own
_STREAM_ERROR_STATUS = {
    "overloaded_error": 529,
    "rate_limit_error": 429,
    "api_error": 500,
    "authentication_error": 401,
    "permission_error": 403,
    "not_found_error": 404,
    "request_too_large": 413,
}

TOOL_DESCRIPTION_LIMIT = 1024

# OpenAI reasoning models reject max_tokens
MODEL_FEATURES: dict[str, dict[str, bool]] = {
    "o1": {"uses_max_completion_tokens": True},
    "o1-preview": {"uses_max_completion_tokens": True},
    "o1-mini": {"uses_max_completion_tokens": True},
    "o1-pro": {"uses_max_completion_tokens": True},
    "o3-mini": {"uses_max_completion_tokens": True},
}

_FINISH_REASONS = {
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "stop": "end_turn",
    "length": "max_tokens",
}


class ModelTier(StrEnum):
    LARGE = "large"
    SMALL = "small"


@dataclass
class LlmRequest:
    """A provider-neutral model call."""

    messages: list[dict[str, Any]]  # content-block wire messages
    system_prompt: list[str] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    tier: ModelTier = ModelTier.LARGE
    model: str | None = None  # overrides the tier's model
    max_tokens: int | None = None
    stream: bool | None = None  # None -> settings default


@dataclass
class ProviderResponse:
    """Normalised model output, independent of the wire shape."""

    content: list[Any]
    stop_reason: str | None
    usage: Usage
    model: str


def model_features(model: str) -> dict[str, bool]:
    """Feature flags for a model id: exact match first, then substring."""
    if model in MODEL_FEATURES:
        return MODEL_FEATURES[model]
    for key, features in MODEL_FEATURES.items():
        if key in model:
            return features
    return {"uses_max_completion_tokens": False}


def error_from_response(status: int, headers: Any, body: bytes | str) -> ApiStatusError:
    """Build the typed error for a non-2xx response."""
    text = body.decode(errors="replace") if isinstance(body, bytes) else body
    error_type = ""
    message = text[:500] or f"HTTP {status}"
    code = ""
    parsed: Any = None
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
        error = parsed["error"]
        error_type = str(error.get("type") or "")
        message = str(error.get("message") or message)
        code = str(error.get("code") or "")

    header_map = dict(headers.items()) if headers is not None else {}
    lowered = message.lower()
    is_auth = (
        status in (401, 403)
        or error_type == "authentication_error"
        or code == "invalid_api_key"
        or "invalid api key" in lowered
    )
    cls = AuthenticationError if is_auth else ApiStatusError
    return cls(status, message, error_type=error_type, headers=header_map, body=parsed)


def error_from_event(error: dict[str, Any]) -> ApiStatusError:
    """Build the typed error for an error event inside a 200 stream."""
    error_type = str(error.get("type") or "api_error")
    message = str(error.get("message") or error_type)
    status = _STREAM_ERROR_STATUS.get(error_type, 500)
    cls = AuthenticationError if status in (401, 403) else ApiStatusError
    return cls(status, message, error_type=error_type)


def decode_event(data: str) -> dict[str, Any]:
    """Parse one SSE data payload. A malformed frame means a broken stream."""
    try:
        event = json.loads(data)
    except ValueError as exc:
        raise ApiConnectionError(f"Malformed stream event: {data[:200]}") from exc
    if not isinstance(event, dict):
        raise ApiConnectionError(f"Unexpected stream event: {data[:200]}")
    return event


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line. Other SSE fields are skipped."""
    async for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data:
            yield data


class QuirkMemory:
    """Quirks detected per (base_url, model). Shared across providers of a client."""

    def __init__(self) -> None:
        self._known: dict[tuple[str, str, str], str] = {}

    def remember(self, base_url: str, model: str, quirk: str, error: str = "") -> None:
        self._known[(base_url, model, quirk)] = error
        logger.info("Remembering provider quirk %s for %s (%s)", quirk, model, base_url)

    def has(self, base_url: str, model: str, quirk: str) -> bool:
        return (base_url, model, quirk) in self._known

    def known(self, base_url: str, model: str) -> list[str]:
        return [q for (b, m, q) in self._known if b == base_url and m == model]


class Provider:
    """Shared HTTP plumbing. Subclasses define the wire shape."""

    name = ""
    endpoint = ""

    def __init__(self, base_url: str, quirks: QuirkMemory | None = None) -> None:
        self.base_url = base_url
        self.quirks = quirks or QuirkMemory()

    # -- wire shape (subclass responsibilities) ------------------------

    def headers(self, api_key: str) -> dict[str, str]:
        raise NotImplementedError

    def build_payload(self, request: LlmRequest, model: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def normalise(self, data: dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError

    async def reduce_stream(self, lines: AsyncIterator[str]) -> dict[str, Any]:
        raise NotImplementedError

    def remediate(self, payload: dict[str, Any], exc: ApiStatusError) -> str | None:
        """Rewrite payload for a detected quirk. Returns the quirk name, or None."""
        return None

    # -- transport ------------------------------------------------------

    async def call(
        self,
        http: httpx.AsyncClient,
        payload: dict[str, Any],
        api_key: str,
    ) -> ProviderResponse:
        """POST one request and normalise the result.

        Raises ApiConnectionError, ApiStatusError (AuthenticationError for
        credential failures) or QuirkRemediated after rewriting payload.
        """
        try:
            return await self._post(http, payload, api_key)
        except ApiStatusError as exc:
            quirk = self.remediate(payload, exc)
            if quirk:
                raise QuirkRemediated(quirk) from exc
            raise

    async def _post(self, http: httpx.AsyncClient, payload: dict[str, Any], api_key: str) -> ProviderResponse:
        headers = self.headers(api_key)
        try:
            if payload.get("stream"):
                async with http.stream("POST", self.endpoint, json=payload, headers=headers) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        raise error_from_response(response.status_code, response.headers, body)
                    data = await self.reduce_stream(response.aiter_lines())
            else:
                response = await http.post(self.endpoint, json=payload, headers=headers)
                if response.status_code != 200:
                    raise error_from_response(response.status_code, response.headers, response.content)
                data = _decode_body(response)
        except httpx.TransportError as exc:
            raise ApiConnectionError(f"{type(exc).__name__}: {exc}") from exc
        return self.normalise(data)


def _decode_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ApiStatusError(
            502, f"Invalid JSON in response body: {response.text[:200]}", error_type="invalid_response"
        ) from exc
    if not isinstance(data, dict):
        raise ApiStatusError(502, f"Unexpected response body: {response.text[:200]}", error_type="invalid_response")
    return data


# ---------------------------------------------------------------------------
# Content-block shape
# ---------------------------------------------------------------------------


def normalise_content_blocks(blocks: list[dict[str, Any]]) -> list[Any]:
    content: list[Any] = []
    for block in blocks:
        kind = block.get("type")
        if kind == "text":
            content.append(TextBlock(text=block.get("text", "")))
        elif kind == "thinking":
            content.append(
                ThinkingBlock(thinking=block.get("thinking", ""), signature=block.get("signature", ""))
            )
        elif kind == "tool_use":
            tool_input = block.get("input")
            content.append(
                ToolUseBlock(
                    id=block.get("id") or f"toolu_{uuid.uuid4().hex}",
                    name=block.get("name", ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
        else:
            logger.debug("Dropping unsupported content block type %s", kind)
    return content


class AnthropicProvider(Provider):
    name = "anthropic"
    endpoint = "/v1/messages"

    def headers(self, api_key: str) -> dict[str, str]:
        headers = {"anthropic-version": _API_VERSION}
        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers
        if "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif api_key:
            headers["x-api-key"] = api_key
        return headers

    def build_payload(self, request: LlmRequest, model: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        system = [{"type": "text", "text": part} for part in request.system_prompt if part]
        if system:
            system[-1]["cache_control"] = {"type": "ephemeral"}
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": copy.deepcopy(request.messages),
        }
        if system:
            payload["system"] = system
        if request.tools:
            payload["tools"] = request.tools
        if stream:
            payload["stream"] = True
        return payload

    def normalise(self, data: dict[str, Any]) -> ProviderResponse:
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=normalise_content_blocks(data.get("content") or []),
            stop_reason=data.get("stop_reason"),
            usage=Usage(
                input_tokens=usage.get("input_tokens") or 0,
                output_tokens=usage.get("output_tokens") or 0,
                cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
                cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
            ),
            model=data.get("model", ""),
        )

    async def reduce_stream(self, lines: AsyncIterator[str]) -> dict[str, Any]:
        """Accumulate SSE events into a non-streaming message dict.

        Pings are skipped; stop_reason and output usage arrive in
        message_delta; an error event inside the 200 stream is raised.
        """
        message: dict[str, Any] = {"content": [], "usage": {}}
        blocks: dict[int, dict[str, Any]] = {}
        partial_json: dict[int, str] = {}

        async for data in iter_sse_data(lines):
            event = decode_event(data)
            event_type = event.get("type")

            if event_type == "ping":
                continue
            if event_type == "error":
                raise error_from_event(event.get("error") or {})

            if event_type == "message_start":
                start = event.get("message") or {}
                message.update({k: v for k, v in start.items() if k != "content"})
                message["usage"] = dict(start.get("usage") or {})
            elif event_type == "content_block_start":
                index = event.get("index", len(blocks))
                block = dict(event.get("content_block") or {})
                if block.get("type") == "tool_use":
                    block["input"] = {}
                    partial_json[index] = ""
                blocks[index] = block
            elif event_type == "content_block_delta":
                index = event.get("index", 0)
                delta = event.get("delta") or {}
                block = blocks.setdefault(index, {"type": "text", "text": ""})
                kind = delta.get("type")
                if kind == "text_delta":
                    block["text"] = block.get("text", "") + delta.get("text", "")
                elif kind == "input_json_delta":
                    partial_json[index] = partial_json.get(index, "") + delta.get("partial_json", "")
                elif kind == "thinking_delta":
                    block["thinking"] = block.get("thinking", "") + delta.get("thinking", "")
                elif kind == "signature_delta":
                    block["signature"] = delta.get("signature", "")
            elif event_type == "content_block_stop":
                index = event.get("index", 0)
                if index in partial_json:
                    raw = partial_json.pop(index)
                    try:
                        blocks[index]["input"] = json.loads(raw) if raw else {}
                    except ValueError:
                        logger.warning("Unparseable tool input for block %d", index)
                        blocks[index]["input"] = {}
            elif event_type == "message_delta":
                delta = event.get("delta") or {}
                if "stop_reason" in delta:
                    message["stop_reason"] = delta["stop_reason"]
                message["usage"].update(
                    {k: v for k, v in (event.get("usage") or {}).items() if v is not None}
                )
            elif event_type == "message_stop":
                break

        message["content"] = [blocks[i] for i in sorted(blocks)]
        return message


# ---------------------------------------------------------------------------
# Choice/delta shape
# ---------------------------------------------------------------------------


def to_openai_messages(
    system_prompt: list[str],
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Convert content-block wire messages to chat-completions messages.

    Tool results become ``tool`` messages placed after the assistant
    message whose tool_calls they answer. Results with no matching call
    are dropped.
    """
    out: list[dict[str, Any]] = [{"role": "system", "content": part} for part in system_prompt if part]
    open_calls: set[str] = set()

    for message in messages:
        role = message["role"]
        content = message["content"]
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]

        if role == "assistant":
            texts = [b["text"] for b in content if b.get("type") == "text"]
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in content
                if b.get("type") == "tool_use"
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            if calls:
                entry["tool_calls"] = calls
                open_calls.update(call["id"] for call in calls)
            out.append(entry)
            continue

        texts = []
        for block in content:
            kind = block.get("type")
            if kind == "tool_result":
                call_id = block["tool_use_id"]
                if call_id not in open_calls:
                    logger.debug("Dropping orphan tool result %s", call_id)
                    continue
                open_calls.discard(call_id)
                result = block.get("content", "")
                out.append(
                    {
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": result if isinstance(result, str) else json.dumps(result),
                    }
                )
            elif kind == "text":
                texts.append(block["text"])
        if texts:
            out.append({"role": "user", "content": "\n".join(texts)})
    return out


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


def _merge_delta(acc: Any, delta: Any) -> Any:
    """Merge one streamed delta into the accumulated message.

    Strings concatenate, numbers overwrite, lists of tool calls merge by
    their ``index`` field, nested dicts merge recursively.
    """
    if acc is None:
        acc = {}
    acc = dict(acc)
    for key, value in delta.items():
        if value is None:
            continue
        current = acc.get(key)
        if current is None:
            if isinstance(value, list):
                merged: list[Any] = []
                for item in value:
                    index = item.get("index", len(merged))
                    while len(merged) <= index:
                        merged.append(None)
                    merged[index] = _merge_delta(None, {k: v for k, v in item.items() if k != "index"})
                acc[key] = merged
            else:
                acc[key] = value
        elif isinstance(current, str) and isinstance(value, str):
            acc[key] = current + value
        elif isinstance(current, list) and isinstance(value, list):
            merged = list(current)
            for item in value:
                index = item.get("index", len(merged))
                while len(merged) <= index:
                    merged.append(None)
                merged[index] = _merge_delta(merged[index], {k: v for k, v in item.items() if k != "index"})
            acc[key] = merged
        elif isinstance(current, dict) and isinstance(value, dict):
            acc[key] = _merge_delta(current, value)
        else:
            acc[key] = value
    return acc


class OpenAIProvider(Provider):
    name = "openai"
    endpoint = "/chat/completions"

    def headers(self, api_key: str) -> dict[str, str]:
        return {"authorization": f"Bearer {api_key}"} if api_key else {}

    def build_payload(self, request: LlmRequest, model: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": to_openai_messages(request.system_prompt, request.messages),
        }
        if request.tools:
            payload["tools"] = to_openai_tools(request.tools)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

        if model_features(model)["uses_max_completion_tokens"]:
            _use_max_completion_tokens(payload)
        for quirk in self.quirks.known(self.base_url, model):
            QUIRK_FIXES[quirk][1](payload)
        return payload

    def remediate(self, payload: dict[str, Any], exc: ApiStatusError) -> str | None:
        message = exc.message
        for quirk, (detect, fix) in QUIRK_FIXES.items():
            if detect(message) and fix(payload):
                self.quirks.remember(self.base_url, payload.get("model", ""), quirk, message)
                logger.warning("Provider quirk %s detected, retrying with rewritten request", quirk)
                return quirk
        return None

    def normalise(self, data: dict[str, Any]) -> ProviderResponse:
        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}
        if not message:
            logger.warning("Response without a message: %s", json.dumps(data)[:500])

        content: list[Any] = []
        reasoning = message.get("reasoning") or message.get("reasoning_content")
        if reasoning:
            content.append(ThinkingBlock(thinking=reasoning))
        if message.get("content"):
            content.append(TextBlock(text=message["content"]))
        for call in message.get("tool_calls") or []:
            function = (call or {}).get("function") or {}
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except ValueError:
                arguments = {}
            content.append(
                ToolUseBlock(
                    id=(call or {}).get("id") or f"call_{uuid.uuid4().hex}",
                    name=function.get("name", ""),
                    input=arguments if isinstance(arguments, dict) else {},
                )
            )

        finish = choice.get("finish_reason")
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens") or 0
        cached = (usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0
        return ProviderResponse(
            content=content,
            stop_reason=_FINISH_REASONS.get(finish, finish),
            usage=Usage(
                input_tokens=prompt_tokens - cached,
                output_tokens=usage.get("completion_tokens") or 0,
                cache_read_input_tokens=cached,
            ),
            model=data.get("model", ""),
        )

    async def reduce_stream(self, lines: AsyncIterator[str]) -> dict[str, Any]:
        """Fold chat-completion chunks into one non-streaming completion dict."""
        completion: dict[str, Any] = {}
        message: dict[str, Any] = {}
        finish_reason = None

        async for data in iter_sse_data(lines):
            if data == "[DONE]":
                break
            chunk = decode_event(data)
            if isinstance(chunk.get("error"), dict):
                raise error_from_event(chunk["error"])
            for key in ("id", "model", "created", "object"):
                if key in chunk and key not in completion:
                    completion[key] = chunk[key]
            if chunk.get("usage"):
                completion["usage"] = chunk["usage"]
            choices = chunk.get("choices") or []
            if not choices:
                continue
            message = _merge_delta(message, choices[0].get("delta") or {})
            if choices[0].get("finish_reason"):
                finish_reason = choices[0]["finish_reason"]

        message.setdefault("role", "assistant")
        completion["choices"] = [{"index": 0, "message": message, "finish_reason": finish_reason}]
        return completion


# ---------------------------------------------------------------------------
# Quirk fixes: detect(error_message) -> bool, fix(payload) -> changed
# ---------------------------------------------------------------------------


def _split_tool_descriptions(payload: dict[str, Any]) -> bool:
    overflow: dict[str, str] = {}
    for tool in payload.get("tools") or []:
        function = tool["function"]
        description = function.get("description") or ""
        if len(description) <= TOOL_DESCRIPTION_LIMIT:
            continue
        head, rest = "", ""
        for line in description.split("\n"):
            if not rest and len(head) + len(line) < TOOL_DESCRIPTION_LIMIT:
                head += line + "\n"
            else:
                rest += line + "\n"
        function["description"] = head[:TOOL_DESCRIPTION_LIMIT]
        overflow[function["name"]] = rest
    if not overflow:
        return False

    text = "<additional-tool-usage-instructions>\n\n"
    for name, description in overflow.items():
        text += f"<{name}>\n{description}\n</{name}>\n\n"
    text += "</additional-tool-usage-instructions>"

    messages = payload["messages"]
    insert_at = 0
    for i, message in enumerate(messages):
        if message.get("role") == "system":
            insert_at = i + 1
    messages.insert(insert_at, {"role": "system", "content": text})
    return True


def _use_max_completion_tokens(payload: dict[str, Any]) -> bool:
    if "max_tokens" not in payload or "max_completion_tokens" in payload:
        return False
    payload["max_completion_tokens"] = payload.pop("max_tokens")
    return True


def _drop_stream_options(payload: dict[str, Any]) -> bool:
    return payload.pop("stream_options", None) is not None


def _strip_citations(payload: dict[str, Any]) -> bool:
    changed = False
    for message in payload.get("messages") or []:
        content = message.get("content")
        items = content if isinstance(content, list) else [content]
        for item in items:
            if isinstance(item, dict) and "citations" in item:
                del item["citations"]
                changed = True
    return changed


QUIRK_FIXES: dict[str, tuple[Any, Any]] = {
    "tool_description_length": (
        lambda msg: f"maximum length {TOOL_DESCRIPTION_LIMIT}" in msg,
        _split_tool_descriptions,
    ),
    "max_completion_tokens": (
        lambda msg: "Use 'max_completion_tokens'" in msg,
        _use_max_completion_tokens,
    ),
    "stream_options": (
        lambda msg: "stream_options" in msg,
        _drop_stream_options,
    ),
    "citations": (
        lambda msg: "Extra inputs are not permitted" in msg and "citations" in msg,
        _strip_citations,
    ),
}


def create_provider(name: str, base_url: str, quirks: QuirkMemory | None = None) -> Provider:
    if name == "openai":
        return OpenAIProvider(base_url, quirks)
    if name == "anthropic":
        return AnthropicProvider(base_url, quirks)
    raise ValueError(f"Unknown provider: {name}")
