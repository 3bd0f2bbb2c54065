"""LM Studio local server backend."""

from typing import AsyncIterator

import httpx

from switchback.config import CloudBackendConfig, LMStudioConfig
from switchback.llm import BackendCapabilities, BackendStatus, ChatOptions, Message, StreamEvent
from switchback.llm.backends.chat_completions import ChatCompletionsBackend
from switchback.llm.normalizer import normalize_stream
from switchback.llm.retry import RetryPolicy
from switchback.logging import get_logger

log = get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 2.0


class LMStudioBackend(ChatCompletionsBackend):
    """Talks to LM Studio's OpenAI-compatible server.

    Models served by LM Studio may write channel-marked reasoning into the
    content stream, so every call is routed through ``normalize_stream``.
    """

    backend_id = "lmstudio"
    display_name = "LM Studio"
    description = "Local models served by the LM Studio desktop app"
    requires_api_key = False
    capabilities = BackendCapabilities(
        streaming=True,
        tool_calling=True,
        embeddings=True,
        runs_locally=True,
    )

    def __init__(self, config: LMStudioConfig, client: httpx.AsyncClient | None = None):
        super().__init__(
            CloudBackendConfig(
                model=config.model,
                base_url=config.base_url,
                embedding_model=config.embedding_model,
            ),
            retry=RetryPolicy(max_retries=0),
            client=client,
        )
        self.configured_model = config.model

    async def list_models(self) -> list[str]:
        response = await self.client.get(f"{self.base_url}/models", timeout=PROBE_TIMEOUT_SECONDS)
        response.raise_for_status()
        return [row["id"] for row in response.json().get("data", []) if row.get("id")]

    async def probe(self) -> BackendStatus:
        try:
            models = await self.list_models()
        except (httpx.ConnectError, httpx.TimeoutException):
            return BackendStatus.unavailable("LM Studio is not running")
        except Exception as e:
            log.debug("LM Studio probe failed", error=str(e))
            return BackendStatus.unavailable(f"LM Studio error: {e}")

        if not models:
            return BackendStatus.unavailable("No models loaded in LM Studio")
        if self.configured_model and self.configured_model in models:
            return BackendStatus.ok(model=self.configured_model)
        return BackendStatus.ok(model=models[0])

    async def initialize(self) -> None:
        if self.model:
            return
        status = await self.probe()
        if status.available and status.model:
            self.model = status.model
            log.info("LM Studio model selected", model=self.model)

    def stream(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        return normalize_stream(super().stream(messages, options))
