"""Bounded exponential backoff for transient backend failures."""

import asyncio
import random
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from switchback.config import RetryConfig
from switchback.exceptions import BackendAPIError
from switchback.llm import StreamEvent
from switchback.logging import get_logger

log = get_logger(__name__)

_RETRYABLE_PHRASES = ("rate limit", "rate_limit", "overloaded", "too many requests")


def is_retryable_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(phrase in lowered for phrase in _RETRYABLE_PHRASES)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap plus capped exponential delay with ±25% jitter."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable_status_codes: frozenset[int] = frozenset({429, 503, 529})

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=max(0, config.max_retries),
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            retryable_status_codes=frozenset(config.retryable_status_codes),
        )

    def is_retryable_status(self, status_code: int | None) -> bool:
        return status_code is not None and status_code in self.retryable_status_codes

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0.0, delay + jitter)


async def stream_with_retry(
    make_stream: Callable[[], AsyncIterator[StreamEvent]],
    policy: RetryPolicy,
    backend_id: str,
) -> AsyncIterator[StreamEvent]:
    """Re-open a backend stream after retryable failures.

    A failure after the first event has been yielded is never retried, so
    callers never see duplicated text.
    """
    attempt = 0
    while True:
        yielded = False
        try:
            async for event in make_stream():
                yielded = True
                yield event
            return
        except BackendAPIError as e:
            if yielded or not e.retryable or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            log.warning(
                "Retrying backend call",
                backend=backend_id,
                attempt=attempt,
                max_retries=policy.max_retries,
                status_code=e.status_code,
                delay_seconds=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)
