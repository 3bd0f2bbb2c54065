"""Ollama local server backend."""

import json
from typing import Any, AsyncIterator

import httpx

from switchback.config import OllamaConfig
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
    new_call_id,
)
from switchback.llm.normalizer import normalize_stream
from switchback.logging import get_logger
from switchback.usage import record_usage

log = get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 2.0


class OllamaBackend(LLMBackend):
    """Direct Ollama API backend (``/api/chat`` NDJSON streaming)."""

    def __init__(self, config: OllamaConfig, client: httpx.AsyncClient | None = None):
        """Initialize Ollama backend.

        Args:
            config: Ollama section of the backends config
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        self.model = config.model
        self.base_url = config.base_url.rstrip("/")
        self.num_ctx = config.num_ctx
        self._client = client
        self._owns_client = client is None
        self.info = BackendInfo(
            id="ollama",
            name="Ollama",
            description="Local models served by an Ollama process",
            capabilities=BackendCapabilities(
                streaming=True,
                tool_calling=True,
                runs_locally=True,
            ),
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=120.0, follow_redirects=True)
        return self._client

    async def list_models(self) -> list[str]:
        response = await self.client.get(f"{self.base_url}/api/tags", timeout=PROBE_TIMEOUT_SECONDS)
        response.raise_for_status()
        return [row["name"] for row in response.json().get("models", []) if row.get("name")]

    def _has_model(self, names: list[str]) -> bool:
        return any(name == self.model or name.split(":", 1)[0] == self.model for name in names)

    async def probe(self) -> BackendStatus:
        try:
            names = await self.list_models()
        except (httpx.ConnectError, httpx.TimeoutException):
            return BackendStatus.unavailable("Ollama is not running")
        except Exception as e:
            log.debug("Ollama probe failed", error=str(e))
            return BackendStatus.unavailable(f"Ollama error: {e}")

        if not self._has_model(names):
            return BackendStatus.unavailable(f"Model '{self.model}' is not pulled in Ollama")
        return BackendStatus.ok(model=self.model)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.parsed_arguments()}}
                    for call in msg.tool_calls
                ]
            if msg.role == "tool" and msg.name:
                entry["tool_name"] = msg.name
            result.append(entry)
        return result

    def _build_body(self, messages: list[Message], options: ChatOptions) -> dict[str, Any]:
        ollama_options: dict[str, Any] = {"num_ctx": self.num_ctx}
        if options.temperature is not None:
            ollama_options["temperature"] = options.temperature
        if options.max_tokens is not None:
            ollama_options["num_predict"] = options.max_tokens

        body: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": self._convert_messages(messages),
            "stream": True,
            "options": ollama_options,
        }
        tools = limit_tools(options.tools, self.info.capabilities.max_tools)
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
        return body

    @staticmethod
    def _tool_calls(raw_calls: list[dict[str, Any]], offset: int) -> list[ToolCall]:
        calls = []
        for index, raw in enumerate(raw_calls):
            function = raw.get("function") or {}
            arguments = function.get("arguments", {})
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(
                ToolCall(
                    id=raw.get("id") or new_call_id(offset + index),
                    name=function.get("name", ""),
                    arguments=arguments or "{}",
                )
            )
        return calls

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        return normalize_stream(self._stream_raw(messages, options or ChatOptions()))

    async def _stream_raw(self, messages: list[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, options)
        parts: list[str] = []
        tool_calls: list[ToolCall] = []

        log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(messages))
        try:
            async with self.client.stream("POST", url, json=body) as response:
                if not response.is_success:
                    await response.aread()
                    raise BackendAPIError(
                        f"Ollama API error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if chunk.get("error"):
                        raise BackendAPIError(f"Ollama error: {chunk['error']}")
                    message = chunk.get("message") or {}
                    if message.get("content"):
                        parts.append(message["content"])
                        yield TextDelta(message["content"])
                    if message.get("tool_calls"):
                        tool_calls.extend(self._tool_calls(message["tool_calls"], len(tool_calls)))
                    if chunk.get("done"):
                        break
        except httpx.HTTPError as e:
            raise BackendAPIError(f"Ollama streaming error: {e}") from e

        content = "".join(parts)
        usage = record_usage(messages, content)
        yield ChatResponse(message=Message.assistant(content, tool_calls), usage=usage)

    async def shutdown(self) -> None:
        """Close the HTTP client."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
