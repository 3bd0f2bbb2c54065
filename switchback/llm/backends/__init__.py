"""Concrete backend adapters, one module per backend family."""

from switchback.llm.backends.anthropic_api import AnthropicBackend
from switchback.llm.backends.lmstudio import LMStudioBackend
from switchback.llm.backends.local_llama import LocalLlamaBackend
from switchback.llm.backends.ollama import OllamaBackend
from switchback.llm.backends.on_device import OnDeviceBackend
from switchback.llm.backends.openai_api import OpenAIBackend
from switchback.llm.backends.openrouter import OpenRouterBackend

__all__ = [
    "AnthropicBackend",
    "LMStudioBackend",
    "LocalLlamaBackend",
    "OllamaBackend",
    "OnDeviceBackend",
    "OpenAIBackend",
    "OpenRouterBackend",
]
