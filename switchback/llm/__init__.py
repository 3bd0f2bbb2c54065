"""Backend-agnostic message model and the LLM backend contract."""

import inspect
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, AsyncIterator, Callable

from switchback.exceptions import BackendResponseError


class ToolPriority(IntEnum):
    """Tool ranking used when a backend caps the advertised tool count."""

    CORE = 1
    IMPORTANT = 2
    EXTENDED = 3


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = "{}"  # JSON text

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode arguments, returning an empty dict for malformed payloads."""
        try:
            value = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


def new_call_id(index: int = 0) -> str:
    """Generate a call id for backends that do not supply one."""
    return f"call_{int(time.time() * 1000)}_{index}"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("Tool messages must carry the tool_call_id they answer")
        if not self.tool_calls:
            self.tool_calls = None
            if self.content is None:
                self.content = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[ToolCall] | None = None) -> "Message":
        if tool_calls:
            return cls(role="assistant", content=content or None, tool_calls=list(tool_calls))
        return cls(role="assistant", content=content or "")

    @classmethod
    def tool(cls, call_id: str, name: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=call_id, name=name)

    def to_openai(self) -> dict[str, Any]:
        """Serialize to the chat-completions wire shape."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass
class ToolDefinition:
    """Schema-described capability advertised to a backend."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema
    requires_confirmation: bool = False
    priority: int = ToolPriority.EXTENDED

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


def limit_tools(tools: list[ToolDefinition] | None, max_tools: int | None) -> list[ToolDefinition]:
    """Keep at most ``max_tools`` definitions, core tiers first."""
    items = list(tools or [])
    if max_tools is None or len(items) <= max_tools:
        return items
    ranked = sorted(items, key=lambda tool: int(tool.priority))
    return ranked[: max(0, max_tools)]


@dataclass(frozen=True)
class BackendCapabilities:
    """Feature flags reported by a backend."""

    streaming: bool = True
    tool_calling: bool = True
    structured_output: bool = False
    embeddings: bool = False
    runs_locally: bool = False
    max_tools: int | None = None


@dataclass(frozen=True)
class BackendInfo:
    """Immutable backend descriptor."""

    id: str
    name: str
    description: str
    capabilities: BackendCapabilities
    available_models: tuple[str, ...] | None = None


@dataclass
class StatusMetadata:
    """Extra detail reported by local backends."""

    file_size_mb: int | None = None
    estimated_memory_mb: int | None = None
    context_size: int | None = None


@dataclass
class BackendStatus:
    """Result of a single availability probe."""

    available: bool
    reason: str | None = None
    model: str | None = None
    metadata: StatusMetadata | None = None

    @classmethod
    def ok(cls, model: str | None = None, metadata: StatusMetadata | None = None) -> "BackendStatus":
        return cls(available=True, model=model, metadata=metadata)

    @classmethod
    def unavailable(cls, reason: str) -> "BackendStatus":
        return cls(available=False, reason=reason)


@dataclass
class Usage:
    """Token usage for one backend call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class TextDelta:
    """Incremental user-visible text produced during a call."""

    text: str


@dataclass
class ChatResponse:
    """Final result of a backend call."""

    message: Message
    usage: Usage | None = None


DeltaCallback = Callable[[str], Any]


@dataclass
class ChatOptions:
    """Per-call request options."""

    model: str | None = None
    tools: list[ToolDefinition] | None = None
    on_delta: DeltaCallback | None = None
    temperature: float | None = None
    max_tokens: int | None = None


StreamEvent = TextDelta | ChatResponse


async def deliver_delta(callback: DeltaCallback | None, text: str) -> None:
    """Invoke a delta callback, awaiting it when it is a coroutine function."""
    if callback is None or not text:
        return
    result = callback(text)
    if inspect.isawaitable(result):
        await result


class LLMBackend(ABC):
    """Abstract base class for backend adapters.

    Adapters implement ``stream()`` as an async sequence of ``TextDelta``
    items followed by exactly one ``ChatResponse``. ``chat()`` consumes that
    sequence, forwarding each delta to ``on_delta`` before pulling the next.
    """

    info: BackendInfo

    @abstractmethod
    async def probe(self) -> BackendStatus:
        """Report availability. Must not raise."""

    async def initialize(self) -> None:
        """Acquire resources. Safe to call more than once."""
        return None

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        pass

    async def chat(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> ChatResponse:
        """Run one call, delivering deltas to ``options.on_delta`` in order."""
        opts = options or ChatOptions()
        response: ChatResponse | None = None
        async for event in self.stream(messages, opts):
            if isinstance(event, ChatResponse):
                response = event
            else:
                await deliver_delta(opts.on_delta, event.text)
        if response is None:
            raise BackendResponseError(f"{self.info.name} returned no response")
        return response

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError(f"{self.info.name} does not support embeddings")

    async def shutdown(self) -> None:
        return None


__all__ = [
    "BackendCapabilities",
    "BackendInfo",
    "BackendStatus",
    "ChatOptions",
    "ChatResponse",
    "DeltaCallback",
    "LLMBackend",
    "Message",
    "StatusMetadata",
    "StreamEvent",
    "TextDelta",
    "ToolCall",
    "ToolDefinition",
    "ToolPriority",
    "Usage",
    "deliver_delta",
    "limit_tools",
    "new_call_id",
]
