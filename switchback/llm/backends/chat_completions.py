"""Shared adapter for chat-completions style HTTP APIs (OpenAI, OpenRouter, LM Studio)."""

import json
from typing import Any, AsyncIterator

import httpx

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
    new_call_id,
)
from switchback.llm.retry import RetryPolicy, is_retryable_message, stream_with_retry
from switchback.logging import get_logger
from switchback.usage import record_usage

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> dict[str, Any] | str | None:
    """Decode one ``data:`` line. Returns the sentinel string, a payload, or None."""
    text = line.strip()
    if not text.startswith("data:"):
        return None
    payload = text[len("data:"):].strip()
    if payload == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        log.debug("Skipping malformed stream line", line=text[:200])
        return None
    return data if isinstance(data, dict) else None


class ToolCallAccumulator:
    """Assemble streamed tool-call fragments keyed by their index."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def add(self, fragments: list[dict[str, Any]]) -> None:
        for fragment in fragments:
            index = fragment.get("index")
            if not isinstance(index, int):
                index = len(self._calls)
            function = fragment.get("function") or {}
            existing = self._calls.get(index)
            if existing is None:
                self._calls[index] = {
                    "id": fragment.get("id") or new_call_id(index),
                    "name": function.get("name") or "",
                    "arguments": function.get("arguments") or "",
                }
                continue
            if fragment.get("id") and not existing["id"]:
                existing["id"] = fragment["id"]
            if function.get("name") and not existing["name"]:
                existing["name"] = function["name"]
            existing["arguments"] += function.get("arguments") or ""

    def calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=call["id"], name=call["name"], arguments=call["arguments"] or "{}")
            for _, call in sorted(self._calls.items())
            if call["name"]
        ]


class ChatCompletionsBackend(LLMBackend):
    """Streams ``POST {base_url}/chat/completions`` as server-sent events."""

    backend_id = ""
    display_name = ""
    description = ""
    api_key_env = ""
    default_base_url = ""
    default_model = ""
    default_models: tuple[str, ...] = ()
    default_embedding_model = ""
    requires_api_key = True
    capabilities = BackendCapabilities(streaming=True, tool_calling=True, structured_output=True)

    def __init__(
        self,
        config: CloudBackendConfig,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = config.resolved_api_key(self.api_key_env)
        self.model = config.model or self.default_model
        self.embedding_model = config.embedding_model or self.default_embedding_model
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.retry = retry or RetryPolicy()
        self._client = client
        self._owns_client = client is None
        self.info = BackendInfo(
            id=self.backend_id,
            name=self.display_name,
            description=self.description,
            capabilities=self.capabilities,
            available_models=tuple(config.models) or self.default_models,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=120.0, follow_redirects=True)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def probe(self) -> BackendStatus:
        if not self.api_key:
            return BackendStatus.unavailable("No API key configured")
        return BackendStatus.ok(model=self.model)

    def _build_body(self, messages: list[Message], options: ChatOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": [m.to_openai() for m in messages],
            "stream": True,
        }
        tools = limit_tools(options.tools, self.info.capabilities.max_tools)
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        return body

    def _api_error(self, status_code: int | None, detail: str) -> BackendAPIError:
        retryable = self.retry.is_retryable_status(status_code) or is_retryable_message(detail)
        prefix = f"{self.display_name} API error"
        if status_code is not None:
            prefix += f" {status_code}"
        return BackendAPIError(f"{prefix}: {detail[:500]}", status_code=status_code, retryable=retryable)

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        opts = options or ChatOptions()
        return stream_with_retry(
            lambda: self._stream_once(messages, opts),
            self.retry,
            self.backend_id,
        )

    async def _stream_once(self, messages: list[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        if self.requires_api_key and not self.api_key:
            raise BackendAPIError(f"{self.display_name}: No API key configured")

        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, options)
        parts: list[str] = []
        accumulator = ToolCallAccumulator()

        log.debug("Calling backend", backend=self.backend_id, model=body["model"], msg_count=len(messages))
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    await response.aread()
                    raise self._api_error(response.status_code, response.text)

                async for line in response.aiter_lines():
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    if data == DONE_SENTINEL:
                        break
                    if data.get("error"):
                        error = data["error"]
                        detail = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                        code = error.get("code") if isinstance(error, dict) else None
                        raise self._api_error(code if isinstance(code, int) else None, detail)

                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    text = delta.get("content")
                    if text:
                        parts.append(text)
                        yield TextDelta(text)
                    if delta.get("tool_calls"):
                        accumulator.add(delta["tool_calls"])
        except httpx.HTTPError as e:
            raise BackendAPIError(f"{self.display_name} HTTP error: {e}") from e

        content = "".join(parts)
        usage = record_usage(messages, content)
        yield ChatResponse(message=Message.assistant(content, accumulator.calls()), usage=usage)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """``POST {base_url}/embeddings``; vectors come back in input order."""
        if not self.info.capabilities.embeddings:
            return await super().embed(texts)
        if not texts:
            return []
        model = self.embedding_model or self.model
        try:
            response = await self.client.post(
                f"{self.base_url}/embeddings",
                json={"model": model, "input": texts},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise BackendAPIError(f"{self.display_name} embeddings HTTP error: {e}") from e
        if not response.is_success:
            raise self._api_error(response.status_code, response.text)

        rows = sorted(response.json().get("data", []), key=lambda row: row.get("index", 0))
        return [row["embedding"] for row in rows]

    async def shutdown(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
