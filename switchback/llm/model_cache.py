"""Reference-counted cache for in-process model weights."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from switchback.logging import get_logger

log = get_logger(__name__)


@dataclass
class _Entry:
    model: Any
    refcount: int


class ModelCache:
    """Share loaded models across backend instances keyed by path.

    ``acquire`` loads on first use and otherwise bumps the count;
    ``release`` closes the model once the last holder lets go.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def refcount(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.refcount if entry else 0

    async def acquire(self, key: str, loader: Callable[[], Any]) -> Any:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.refcount += 1
                log.debug("Model cache hit", key=key, refcount=entry.refcount)
                return entry.model

            log.info("Loading model", key=key)
            model = await asyncio.to_thread(loader)
            self._entries[key] = _Entry(model=model, refcount=1)
            return model

    async def release(self, key: str) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.refcount -= 1
            if entry.refcount > 0:
                return
            del self._entries[key]

        close = getattr(entry.model, "close", None)
        if callable(close):
            await asyncio.to_thread(close)
        log.info("Model released", key=key)

    async def clear(self) -> None:
        """Close every cached model regardless of reference counts."""
        async with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
        for key, entry in entries:
            close = getattr(entry.model, "close", None)
            if callable(close):
                await asyncio.to_thread(close)
            log.info("Model released", key=key)
