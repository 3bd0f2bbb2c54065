"""OpenRouter backend: one key, many hosted models."""

import httpx

from switchback.config import OpenRouterConfig
from switchback.llm.backends.chat_completions import ChatCompletionsBackend
from switchback.llm.retry import RetryPolicy

DEFAULT_OPENROUTER_MODELS = (
    "anthropic/claude-sonnet-4",
    "anthropic/claude-opus-4",
    "anthropic/claude-3.5-sonnet",
    "openai/gpt-4o",
    "openai/gpt-4o-mini",
    "google/gemini-2.0-flash",
    "google/gemini-2.5-pro-preview",
    "meta-llama/llama-3.3-70b-instruct",
    "deepseek/deepseek-chat-v3-0324",
)


class OpenRouterBackend(ChatCompletionsBackend):
    backend_id = "openrouter"
    display_name = "OpenRouter"
    description = "Cloud access to Claude, GPT, Gemini and other hosted models"
    api_key_env = "OPENROUTER_API_KEY"
    default_base_url = "https://openrouter.ai/api/v1"
    default_model = "anthropic/claude-sonnet-4"
    default_models = DEFAULT_OPENROUTER_MODELS

    def __init__(
        self,
        config: OpenRouterConfig,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config, retry=retry, client=client)
        self.app_name = config.app_name
        self.app_url = config.app_url

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers
