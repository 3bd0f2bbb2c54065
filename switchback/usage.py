"""Coarse token accounting shared by every backend."""

from dataclasses import dataclass

from switchback.llm import Message, Usage


def estimate_tokens(text: str | None) -> int:
    """Estimate token count from character composition.

    ASCII-heavy text is roughly four characters per token; anything else
    (CJK, emoji, mixed scripts) is counted one token per character.
    """
    if not text:
        return 0
    length = len(text)
    ascii_count = sum(1 for ch in text if ord(ch) < 128)
    if ascii_count > length / 2:
        return max(1, length // 4)
    return length


@dataclass
class UsageTotals:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageTracker:
    """Process-wide running total of estimated tokens."""

    def __init__(self) -> None:
        self._totals = UsageTotals()
        self._requests = 0

    def add(self, prompt_tokens: int, completion_tokens: int) -> None:
        self._totals.prompt_tokens += max(0, int(prompt_tokens))
        self._totals.completion_tokens += max(0, int(completion_tokens))
        self._requests += 1

    @property
    def totals(self) -> UsageTotals:
        return UsageTotals(self._totals.prompt_tokens, self._totals.completion_tokens)

    @property
    def request_count(self) -> int:
        return self._requests

    def reset(self) -> None:
        self._totals = UsageTotals()
        self._requests = 0


# Global tracker instance
_tracker: UsageTracker | None = None


def get_usage_tracker() -> UsageTracker:
    """Get the global usage tracker."""
    global _tracker
    if _tracker is None:
        _tracker = UsageTracker()
    return _tracker


def estimate_prompt(messages: list[Message]) -> int:
    total = 0
    for message in messages:
        total += estimate_tokens(message.content)
        for call in message.tool_calls or []:
            total += estimate_tokens(call.arguments)
    return total


def record_usage(messages: list[Message], completion: str | None) -> Usage:
    """Estimate one call's usage, add it to the global tracker and return it."""
    usage = Usage(
        prompt_tokens=estimate_prompt(messages),
        completion_tokens=estimate_tokens(completion),
    )
    get_usage_tracker().add(usage.prompt_tokens, usage.completion_tokens)
    return usage
