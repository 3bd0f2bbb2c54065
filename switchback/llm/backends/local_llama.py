"""In-process GGUF inference through llama-cpp-python."""

import asyncio
import importlib.util
import math
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from switchback.config import LocalLlamaConfig
from switchback.exceptions import BackendAPIError, BackendError
from switchback.llm import (
    BackendCapabilities,
    BackendInfo,
    BackendStatus,
    ChatOptions,
    ChatResponse,
    LLMBackend,
    Message,
    StatusMetadata,
    StreamEvent,
    TextDelta,
    limit_tools,
)
from switchback.llm.backends.chat_completions import ToolCallAccumulator
from switchback.llm.model_cache import ModelCache
from switchback.llm.normalizer import normalize_stream
from switchback.logging import get_logger
from switchback.usage import record_usage

log = get_logger(__name__)

MEMORY_OVERHEAD = 1.2
DEFAULT_BATCH_SIZE = 512

ModelLoader = Callable[[LocalLlamaConfig, bool], Any]


def load_llama(config: LocalLlamaConfig, embedding: bool = False) -> Any:
    """Load a GGUF model with llama-cpp-python (imported on demand)."""
    from llama_cpp import Llama

    return Llama(
        model_path=config.model_path,
        n_gpu_layers=config.gpu_layers,
        n_ctx=config.context_size or 0,
        n_batch=config.batch_size or DEFAULT_BATCH_SIZE,
        flash_attn=config.flash_attention,
        embedding=embedding,
        verbose=False,
    )


def explain_inference_error(error: Exception) -> str:
    """Rewrite low-level inference failures into something the user can act on."""
    message = str(error)
    lowered = message.lower()
    if "context" in lowered or "overflow" in lowered:
        return "Context window exceeded. Try a shorter conversation or increase context_size in config."
    if "memory" in lowered or "alloc" in lowered:
        return "Insufficient memory for model. Try reducing gpu_layers to 0 for CPU-only mode."
    if "cuda" in lowered or "gpu" in lowered:
        return "GPU error occurred. Try setting gpu_layers to 0 in config for CPU-only mode."
    return f"Local inference failed: {message}"


def flatten_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Render tool traffic as plain turns; most GGUF chat templates lack a tool role."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            result.append({"role": "user", "content": f"Tool ({msg.name or 'tool'}): {msg.content or ''}"})
        elif msg.role == "assistant" and msg.tool_calls:
            called = " ".join(f"[Called: {call.name}]" for call in msg.tool_calls)
            result.append({"role": "assistant", "content": f"{msg.content or ''} {called}".strip()})
        else:
            result.append({"role": msg.role, "content": msg.content or ""})
    return result


class LocalLlamaBackend(LLMBackend):
    """Runs a GGUF model inside this process.

    Tool calls produced by the model are recorded and returned on the
    response; the agent executes them, never the backend.
    """

    def __init__(
        self,
        config: LocalLlamaConfig,
        cache: ModelCache | None = None,
        loader: ModelLoader | None = None,
    ):
        self.config = config
        self.cache = cache or ModelCache()
        self._loader = loader
        self._model: Any = None
        self._embedder: Any = None
        self.info = BackendInfo(
            id="local-llama",
            name="Local Llama",
            description="Direct local inference on GGUF models via llama-cpp-python",
            capabilities=BackendCapabilities(
                streaming=True,
                tool_calling=True,
                structured_output=True,
                embeddings=True,
                runs_locally=True,
            ),
        )

    @property
    def model_path(self) -> str:
        return self.config.model_path

    def _load(self, embedding: bool) -> Any:
        loader = self._loader or load_llama
        return loader(self.config, embedding)

    async def probe(self) -> BackendStatus:
        try:
            if self._loader is None and importlib.util.find_spec("llama_cpp") is None:
                return BackendStatus.unavailable(
                    "llama-cpp-python not installed. Run: pip install 'switchback[local]'"
                )
            path = Path(self.model_path).expanduser()
            if not self.model_path or not path.is_file():
                return BackendStatus.unavailable(f"Model file not found: {self.model_path}")

            size_mb = math.ceil(path.stat().st_size / (1024 * 1024))
            return BackendStatus.ok(
                model=self.model_path,
                metadata=StatusMetadata(
                    file_size_mb=size_mb,
                    estimated_memory_mb=math.ceil(size_mb * MEMORY_OVERHEAD),
                    context_size=self.config.context_size,
                ),
            )
        except Exception as e:
            return BackendStatus.unavailable(f"Error checking model: {e}")

    async def initialize(self) -> None:
        if self._model is not None:
            return
        self._model = await self.cache.acquire(self.model_path, lambda: self._load(False))

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        return normalize_stream(self._stream_raw(messages, options or ChatOptions()))

    def _completion_kwargs(self, messages: list[Message], options: ChatOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"messages": flatten_messages(messages), "stream": True}
        tools = limit_tools(options.tools, self.info.capabilities.max_tools)
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
            kwargs["tool_choice"] = "auto"
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        return kwargs

    async def _stream_raw(self, messages: list[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        await self.initialize()
        kwargs = self._completion_kwargs(messages, options)
        parts: list[str] = []
        accumulator = ToolCallAccumulator()

        try:
            chunks = await asyncio.to_thread(lambda: self._model.create_chat_completion(**kwargs))
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                text = delta.get("content")
                if text:
                    parts.append(text)
                    yield TextDelta(text)
                if delta.get("tool_calls"):
                    accumulator.add(delta["tool_calls"])
        except BackendError:
            raise
        except Exception as e:
            log.error("Local inference failed", model=self.model_path, error=str(e))
            raise BackendAPIError(explain_inference_error(e)) from e

        content = "".join(parts)
        usage = record_usage(messages, content)
        yield ChatResponse(message=Message.assistant(content, accumulator.calls()), usage=usage)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._embedder is None:
            self._embedder = await self.cache.acquire(
                f"{self.model_path}#embedding", lambda: self._load(True)
            )
        try:
            result = await asyncio.to_thread(self._embedder.create_embedding, texts)
        except Exception as e:
            raise BackendAPIError(explain_inference_error(e)) from e
        return [row["embedding"] for row in result.get("data", [])]

    async def shutdown(self) -> None:
        if self._model is not None:
            self._model = None
            await self.cache.release(self.model_path)
        if self._embedder is not None:
            self._embedder = None
            await self.cache.release(f"{self.model_path}#embedding")
