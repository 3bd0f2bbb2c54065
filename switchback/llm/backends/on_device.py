"""Apple on-device foundation model, reached through a local HTTP bridge.

The bridge speaks a small OpenAI-like dialect on ``/v1``. The on-device
model has a tiny context window, copes badly with more than ten tools,
only honors tools on non-streaming calls and sometimes answers with the
literal string ``"null"``.
"""

import json
import sys
from typing import Any, AsyncIterator

import httpx

from switchback.config import OnDeviceConfig
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
    ToolDefinition,
    limit_tools,
    new_call_id,
)
from switchback.llm.backends.chat_completions import DONE_SENTINEL, parse_sse_line
from switchback.llm.normalizer import normalize_stream
from switchback.logging import get_logger
from switchback.usage import record_usage

log = get_logger(__name__)

MAX_TOOLS = 10
MAX_TOOL_RESULT_CHARS = 1500
PROBE_TIMEOUT_SECONDS = 2.0
MODEL_NAME = "Apple Foundation Model"
_DESERIALIZE_MARKERS = ("deserialize", "Generable")


def truncate_tool_result(text: str) -> str:
    if len(text) <= MAX_TOOL_RESULT_CHARS:
        return text
    omitted = len(text) - MAX_TOOL_RESULT_CHARS
    return text[:MAX_TOOL_RESULT_CHARS] + f"\n... [truncated, {omitted} chars omitted]"


def flatten_messages(messages: list[Message]) -> list[dict[str, str]]:
    """Reduce the transcript to plain role/content pairs."""
    result: list[dict[str, str]] = []
    for msg in messages:
        if msg.role in ("system", "user"):
            result.append({"role": msg.role, "content": msg.content or ""})
        elif msg.role == "assistant":
            if msg.tool_calls:
                calls = "\n".join(
                    f"[Calling tool: {call.name} with args: {call.arguments}]" for call in msg.tool_calls
                )
                content = f"{msg.content}\n{calls}" if msg.content else calls
                result.append({"role": "assistant", "content": content})
            elif msg.content:
                result.append({"role": "assistant", "content": msg.content})
        elif msg.role == "tool":
            result.append(
                {
                    "role": "user",
                    "content": f"[Tool result from {msg.name or 'tool'}]: {truncate_tool_result(msg.content or '')}",
                }
            )
    return result


def _is_null_answer(content: str | None, tool_calls: list[ToolCall]) -> bool:
    return not tool_calls and (content or "").strip() in ("", "null")


class OnDeviceBackend(LLMBackend):
    """Apple Intelligence on macOS."""

    def __init__(
        self,
        config: OnDeviceConfig,
        client: httpx.AsyncClient | None = None,
        platform: str | None = None,
    ):
        self.base_url = config.base_url.rstrip("/")
        self.platform = platform or sys.platform
        self._client = client
        self._owns_client = client is None
        self.info = BackendInfo(
            id="apple-ai",
            name="Apple Intelligence",
            description="On-device inference with Apple Foundation Models (macOS 26+)",
            capabilities=BackendCapabilities(
                streaming=True,
                tool_calling=True,
                structured_output=True,
                runs_locally=True,
                max_tools=MAX_TOOLS,
            ),
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=120.0)
        return self._client

    async def probe(self) -> BackendStatus:
        if self.platform != "darwin":
            return BackendStatus.unavailable("Apple Intelligence is only available on macOS")
        try:
            response = await self.client.get(f"{self.base_url}/v1/models", timeout=PROBE_TIMEOUT_SECONDS)
        except (httpx.ConnectError, httpx.TimeoutException):
            return BackendStatus.unavailable(f"Apple Intelligence bridge is not running at {self.base_url}")
        except Exception as e:
            log.debug("Apple Intelligence probe failed", error=str(e))
            return BackendStatus.unavailable(f"Apple AI error: {e}")

        if not response.is_success:
            return BackendStatus.unavailable(
                "Apple Intelligence not available. Requires macOS 26+ with Apple Silicon "
                "and Apple Intelligence enabled."
            )
        return BackendStatus.ok(model=MODEL_NAME)

    def _body(
        self,
        messages: list[dict[str, str]],
        tools: list[ToolDefinition],
        options: ChatOptions,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"messages": messages, "stream": stream}
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        return body

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for index, raw in enumerate(raw_calls or []):
            function = raw.get("function") or {}
            arguments = function.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            if function.get("name"):
                calls.append(ToolCall(id=raw.get("id") or new_call_id(index), name=function["name"], arguments=arguments))
        return calls

    async def _complete(
        self,
        messages: list[dict[str, str]],
        tools: list[ToolDefinition],
        options: ChatOptions,
    ) -> tuple[str, list[ToolCall]]:
        url = f"{self.base_url}/v1/chat/completions"
        try:
            response = await self.client.post(url, json=self._body(messages, tools, options, stream=False))
        except httpx.HTTPError as e:
            raise BackendAPIError(f"Apple Intelligence bridge error: {e}") from e
        if not response.is_success:
            raise BackendAPIError(
                f"Apple Intelligence error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        choices = response.json().get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message.get("content") or "", self._parse_tool_calls(message.get("tool_calls"))

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        return normalize_stream(self._stream_raw(messages, options or ChatOptions()))

    async def _stream_raw(self, messages: list[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        flat = flatten_messages(messages)
        tools = limit_tools(options.tools, MAX_TOOLS)
        try:
            if tools:
                content, tool_calls = await self._complete(flat, tools, options)
                if _is_null_answer(content, tool_calls):
                    log.info("Null answer from Apple Intelligence, retrying without tools")
                    content, tool_calls = await self._complete(flat, [], options)
                    if _is_null_answer(content, tool_calls):
                        content = ""
            else:
                content = ""
                async for text in self._stream_text(flat, options):
                    content += text
                    yield TextDelta(text)
                tool_calls = []
        except BackendAPIError as e:
            if not any(marker in str(e) for marker in _DESERIALIZE_MARKERS):
                raise
            log.warning("Apple Intelligence could not decode its response", error=str(e))
            content = (
                f"Apple Intelligence response error: {e}. "
                "This may indicate the model couldn't process the request properly."
            )
            tool_calls = []

        usage = record_usage(messages, content)
        yield ChatResponse(message=Message.assistant(content, tool_calls), usage=usage)

    async def _stream_text(self, messages: list[dict[str, str]], options: ChatOptions) -> AsyncIterator[str]:
        url = f"{self.base_url}/v1/chat/completions"
        received = False
        try:
            async with self.client.stream("POST", url, json=self._body(messages, [], options, stream=True)) as response:
                if not response.is_success:
                    await response.aread()
                    raise BackendAPIError(
                        f"Apple Intelligence error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    if data == DONE_SENTINEL:
                        break
                    choices = data.get("choices") or []
                    text = (choices[0].get("delta") or {}).get("content") if choices else None
                    if text:
                        received = True
                        yield text
        except httpx.HTTPError as e:
            if not received:
                raise BackendAPIError(f"Apple Intelligence bridge error: {e}") from e
            log.warning("Apple Intelligence stream ended early", error=str(e))

    async def shutdown(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
