"""Anthropic backend on the official SDK."""

import json
from typing import Any, AsyncIterator

import anthropic
from anthropic import APIConnectionError, APIStatusError

from switchback.config import CloudBackendConfig
from switchback.exceptions import BackendAPIError
from switchback.llm import (
    BackendCapabilities,
    BackendInfo,
    BackendStatus,
    ChatOptions,
    ChatResponse,
    LLMBackend,
    Message,
    StreamEvent,
    TextDelta,
    ToolCall,
    limit_tools,
)
from switchback.llm.retry import RetryPolicy, is_retryable_message, stream_with_retry
from switchback.logging import get_logger
from switchback.usage import record_usage

log = get_logger(__name__)

DEFAULT_ANTHROPIC_MODELS = (
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
    "claude-3-7-sonnet-latest",
    "claude-3-5-haiku-latest",
)
DEFAULT_MAX_TOKENS = 4096
_OVERLOADED_STATUS = 529


def _text_blocks(text: str | None) -> list[dict[str, Any]]:
    return [{"type": "text", "text": text}] if text else []


def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Lift system turns out and translate tool traffic into content blocks.

    Consecutive user-side turns (plain user text and tool results) are merged
    into one; the Messages API only accepts alternating roles.
    """
    system_parts: list[str] = []
    result: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})

    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
        elif msg.role == "user":
            append("user", _text_blocks(msg.content))
        elif msg.role == "assistant":
            blocks = _text_blocks(msg.content)
            for call in msg.tool_calls or []:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": call.parsed_arguments(),
                    }
                )
            append("assistant", blocks)
        elif msg.role == "tool":
            append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": msg.tool_call_id,
                        "content": msg.content or "",
                    }
                ],
            )

    return "\n\n".join(system_parts), result


class AnthropicBackend(LLMBackend):
    """Claude models through ``AsyncAnthropic.messages.stream``."""

    def __init__(
        self,
        config: CloudBackendConfig,
        retry: RetryPolicy | None = None,
        client: Any | None = None,
    ):
        self.api_key = config.resolved_api_key("ANTHROPIC_API_KEY")
        self.model = config.model or DEFAULT_ANTHROPIC_MODELS[0]
        self.base_url = config.base_url or None
        self.retry = retry or RetryPolicy()
        self._client = client
        self.info = BackendInfo(
            id="anthropic",
            name="Anthropic",
            description="Direct access to Claude models via the Anthropic API",
            capabilities=BackendCapabilities(
                streaming=True,
                tool_calling=True,
                structured_output=True,
            ),
            available_models=tuple(config.models) or DEFAULT_ANTHROPIC_MODELS,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            # SDK retries off; stream_with_retry owns backoff.
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                max_retries=0,
            )
        return self._client

    async def probe(self) -> BackendStatus:
        if not self.api_key:
            return BackendStatus.unavailable("No API key configured")
        return BackendStatus.ok(model=self.model)

    def _build_request(self, messages: list[Message], options: ChatOptions) -> dict[str, Any]:
        system, payload = to_anthropic_messages(messages)
        request: dict[str, Any] = {
            "model": options.model or self.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": payload,
        }
        if system:
            request["system"] = system
        tools = limit_tools(options.tools, self.info.capabilities.max_tools)
        if tools:
            request["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in tools
            ]
        if options.temperature is not None:
            request["temperature"] = options.temperature
        return request

    def _map_error(self, error: Exception) -> BackendAPIError:
        if isinstance(error, APIStatusError):
            status = error.status_code
            retryable = (
                self.retry.is_retryable_status(status)
                or status == _OVERLOADED_STATUS
                or status >= 500
                or is_retryable_message(str(error))
            )
            return BackendAPIError(f"Anthropic API error {status}: {error.message}", status_code=status, retryable=retryable)
        return BackendAPIError(f"Anthropic connection error: {error}", retryable=True)

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        opts = options or ChatOptions()
        return stream_with_retry(lambda: self._stream_once(messages, opts), self.retry, "anthropic")

    async def _stream_once(self, messages: list[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            raise BackendAPIError("Anthropic: No API key configured")

        request = self._build_request(messages, options)
        log.debug("Calling backend", backend="anthropic", model=request["model"], msg_count=len(messages))
        try:
            async with self.client.messages.stream(**request) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield TextDelta(text)
                final = await stream.get_final_message()
        except (APIStatusError, APIConnectionError) as e:
            raise self._map_error(e) from e

        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in final.content:
            if block.type == "text":
                parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))

        content = "".join(parts)
        usage = record_usage(messages, content)
        yield ChatResponse(message=Message.assistant(content, tool_calls), usage=usage)
