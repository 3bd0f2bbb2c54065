"""Backend discovery, selection and switching."""

import asyncio
from dataclasses import dataclass

from switchback.config import BackendsConfig, get_config
from switchback.exceptions import (
    BackendNotFoundError,
    BackendUnavailableError,
    ConfigurationError,
    NoBackendAvailableError,
)
from switchback.llm import BackendStatus, LLMBackend
from switchback.llm.backends import (
    AnthropicBackend,
    LMStudioBackend,
    LocalLlamaBackend,
    OllamaBackend,
    OnDeviceBackend,
    OpenAIBackend,
    OpenRouterBackend,
)
from switchback.llm.model_cache import ModelCache
from switchback.llm.retry import RetryPolicy
from switchback.logging import get_logger

log = get_logger(__name__)

# Cloud APIs, then on-device, then local servers, then in-process inference.
DETECTION_ORDER = (
    "openrouter",
    "openai",
    "anthropic",
    "apple-ai",
    "lmstudio",
    "ollama",
    "local-llama",
)


@dataclass
class Detection:
    backend: LLMBackend
    status: BackendStatus


@dataclass(frozen=True)
class RegisteredBackend:
    id: str
    name: str
    description: str


class BackendRegistry:
    """Owns the configured backends and the single active one."""

    def __init__(self, model_cache: ModelCache | None = None):
        self._backends: dict[str, LLMBackend] = {}
        self._active: LLMBackend | None = None
        self._lock = asyncio.Lock()
        self.preferred = ""
        self.model_cache = model_cache or ModelCache()

    def configure(self, settings: BackendsConfig) -> None:
        """Rebuild the backend set from settings.

        Cloud backends are only registered when a key is available. Local
        servers are always registered and report their own availability.
        Raises ConfigurationError while a backend is active; call
        ``shutdown()`` first.
        """
        if self._active is not None:
            raise ConfigurationError(
                f"Cannot reconfigure while backend '{self._active.info.id}' is active; shut it down first"
            )

        self._backends.clear()
        self.preferred = settings.preferred
        retry = RetryPolicy.from_config(settings.retry)

        if settings.openrouter.resolved_api_key("OPENROUTER_API_KEY"):
            self.register(OpenRouterBackend(settings.openrouter, retry=retry))
        if settings.openai.resolved_api_key("OPENAI_API_KEY"):
            self.register(OpenAIBackend(settings.openai, retry=retry))
        if settings.anthropic.resolved_api_key("ANTHROPIC_API_KEY"):
            self.register(AnthropicBackend(settings.anthropic, retry=retry))
        if settings.on_device.enabled:
            self.register(OnDeviceBackend(settings.on_device))
        self.register(LMStudioBackend(settings.lmstudio))
        self.register(OllamaBackend(settings.ollama))
        if settings.local_llama.model_path:
            self.register(LocalLlamaBackend(settings.local_llama, cache=self.model_cache))

        log.debug("Backends configured", backends=list(self._backends), preferred=self.preferred or None)

    def register(self, backend: LLMBackend) -> None:
        self._backends[backend.info.id] = backend

    def registered(self) -> list[RegisteredBackend]:
        return [
            RegisteredBackend(id=b.info.id, name=b.info.name, description=b.info.description)
            for b in self._backends.values()
        ]

    def get(self, backend_id: str) -> LLMBackend:
        backend = self._backends.get(backend_id)
        if backend is None:
            raise BackendNotFoundError(backend_id)
        return backend

    def has(self, backend_id: str) -> bool:
        return backend_id in self._backends

    @property
    def active(self) -> LLMBackend | None:
        return self._active

    @property
    def active_id(self) -> str | None:
        return self._active.info.id if self._active else None

    def available_models(self) -> list[str]:
        if self._active is None:
            return []
        return list(self._active.info.available_models or ())

    def _detection_order(self) -> list[str]:
        ordered: list[str] = []
        candidates = [self.preferred, *DETECTION_ORDER, *self._backends]
        for backend_id in candidates:
            if backend_id and backend_id in self._backends and backend_id not in ordered:
                ordered.append(backend_id)
        return ordered

    @staticmethod
    async def _probe(backend: LLMBackend) -> BackendStatus:
        try:
            return await backend.probe()
        except Exception as e:
            return BackendStatus.unavailable(f"Probe failed: {e}")

    async def statuses(self) -> dict[str, BackendStatus]:
        """Probe every backend in detection order."""
        results: dict[str, BackendStatus] = {}
        for backend_id in self._detection_order():
            results[backend_id] = await self._probe(self._backends[backend_id])
        return results

    async def detect(self) -> Detection | None:
        """Return the first available backend, preferred one first."""
        for backend_id in self._detection_order():
            backend = self._backends[backend_id]
            status = await self._probe(backend)
            if status.available:
                log.info("Backend detected", backend=backend_id, model=status.model)
                return Detection(backend=backend, status=status)
            log.debug("Backend unavailable", backend=backend_id, reason=status.reason)
        return None

    async def get_active(self) -> LLMBackend:
        """Resolve and initialize the active backend on first use."""
        async with self._lock:
            if self._active is not None:
                return self._active
            detection = await self.detect()
            if detection is None:
                raise NoBackendAvailableError()
            await detection.backend.initialize()
            self._active = detection.backend
            return self._active

    async def set_active(self, backend_id: str) -> LLMBackend:
        """Switch to ``backend_id``.

        The previous backend is shut down before the new one is initialized,
        so two backends never hold live resources at the same time.
        """
        async with self._lock:
            backend = self.get(backend_id)
            status = await self._probe(backend)
            if not status.available:
                raise BackendUnavailableError(backend_id, status.reason)
            if backend is self._active:
                return backend

            previous, self._active = self._active, None
            if previous is not None:
                await previous.shutdown()
            await backend.initialize()
            self._active = backend
            log.info(
                "Backend switched",
                backend=backend_id,
                previous=previous.info.id if previous else None,
                model=status.model,
            )
            return backend

    async def shutdown(self) -> None:
        async with self._lock:
            backend, self._active = self._active, None
        if backend is not None:
            await backend.shutdown()


# Global registry instance
_registry: BackendRegistry | None = None


def get_registry() -> BackendRegistry:
    """Get the global backend registry, configured from the global config."""
    global _registry
    if _registry is None:
        _registry = BackendRegistry()
        _registry.configure(get_config().backends)
    return _registry


def set_registry(registry: BackendRegistry) -> None:
    """Set the global backend registry."""
    global _registry
    _registry = registry
