"""OpenAI cloud backend."""

from switchback.llm import BackendCapabilities
from switchback.llm.backends.chat_completions import ChatCompletionsBackend

DEFAULT_OPENAI_MODELS = (
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4-turbo",
    "gpt-4",
    "o1",
    "o1-mini",
    "o3-mini",
)

EMBEDDING_MODEL = "text-embedding-3-small"


class OpenAIBackend(ChatCompletionsBackend):
    backend_id = "openai"
    display_name = "OpenAI"
    description = "Cloud-based access to OpenAI GPT models"
    api_key_env = "OPENAI_API_KEY"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o"
    default_models = DEFAULT_OPENAI_MODELS
    default_embedding_model = EMBEDDING_MODEL
    capabilities = BackendCapabilities(
        streaming=True,
        tool_calling=True,
        structured_output=True,
        embeddings=True,
    )
