"""Configuration management for Switchback."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from switchback.budget import TokenBudget


# Paths
DEFAULT_CONFIG_PATH = Path("~/.switchback/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class RetryConfig(BaseModel):
    """Backoff policy for cloud backends."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    retryable_status_codes: list[int] = [429, 503, 529]


class CloudBackendConfig(BaseModel):
    """Credentials and model selection for a hosted API backend."""

    api_key: str = ""
    model: str = ""
    models: list[str] = Field(default_factory=list)
    base_url: str = ""
    embedding_model: str = ""

    def resolved_api_key(self, env_var: str) -> str:
        """Return configured key, falling back to the conventional env var."""
        return (self.api_key or os.getenv(env_var, "")).strip()


class OpenRouterConfig(CloudBackendConfig):
    """OpenRouter backend configuration."""

    app_name: str = "Switchback"
    app_url: str = ""


class LMStudioConfig(BaseModel):
    """LM Studio local server configuration."""

    model: str = ""
    base_url: str = "http://127.0.0.1:1234/v1"
    embedding_model: str = ""


class OllamaConfig(BaseModel):
    """Ollama local server configuration."""

    model: str = "llama3.2"
    base_url: str = "http://127.0.0.1:11434"
    num_ctx: int = 8192


class LocalLlamaConfig(BaseModel):
    """In-process GGUF inference configuration."""

    model_path: str = ""
    gpu_layers: int = -1
    context_size: int | None = None
    batch_size: int | None = None
    flash_attention: bool = False


class OnDeviceConfig(BaseModel):
    """Apple on-device model bridge configuration."""

    enabled: bool = True
    base_url: str = "http://127.0.0.1:11535"


class BackendsConfig(BaseModel):
    """Backend credentials, paths and selection preferences."""

    preferred: str = ""
    retry: RetryConfig = Field(default_factory=RetryConfig)
    openrouter: OpenRouterConfig = Field(default_factory=OpenRouterConfig)
    openai: CloudBackendConfig = Field(default_factory=CloudBackendConfig)
    anthropic: CloudBackendConfig = Field(default_factory=CloudBackendConfig)
    lmstudio: LMStudioConfig = Field(default_factory=LMStudioConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    local_llama: LocalLlamaConfig = Field(default_factory=LocalLlamaConfig)
    on_device: OnDeviceConfig = Field(default_factory=OnDeviceConfig)


class AgentConfig(BaseModel):
    """Reasoning loop configuration."""

    app_name: str = "Switchback"
    max_iterations: int = 10
    auto_approve: bool = False


class BudgetConfig(BaseModel):
    """Context window budget."""

    total_context_window: int = 4096
    system_reserve: int = 300
    response_reserve: int = 1500

    def to_budget(self) -> TokenBudget:
        return TokenBudget(
            total_context_window=self.total_context_window,
            system_reserve=self.system_reserve,
            response_reserve=self.response_reserve,
        )


class UIConfig(BaseModel):
    """UI configuration."""

    streaming: bool = True
    show_tokens: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Switchback."""

    backends: BackendsConfig = Field(default_factory=BackendsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SWITCHBACK_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; environment variables still apply via BaseSettings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
