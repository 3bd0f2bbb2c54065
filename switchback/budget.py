"""Context budget and history trimming."""

from dataclasses import dataclass

from switchback.llm import Message
from switchback.logging import get_logger
from switchback.usage import estimate_tokens

log = get_logger(__name__)


@dataclass(frozen=True)
class TokenBudget:
    """Fixed split of the context window."""

    total_context_window: int = 4096
    system_reserve: int = 300
    response_reserve: int = 1500

    @property
    def max_history_tokens(self) -> int:
        return self.total_context_window - self.system_reserve - self.response_reserve


def estimate_message(message: Message) -> int:
    """Estimate a message's cost, including any tool call arguments."""
    total = estimate_tokens(message.content)
    for call in message.tool_calls or []:
        total += estimate_tokens(call.name) + estimate_tokens(call.arguments)
    return total


class HistoryManager:
    """Keep a transcript within the history budget by dropping the oldest turns."""

    MIN_KEPT = 3

    def __init__(self, budget: TokenBudget | None = None):
        self.budget = budget or TokenBudget()

    @staticmethod
    def estimate(text: str | None) -> int:
        return estimate_tokens(text)

    def history_tokens(self, transcript: list[Message]) -> int:
        return sum(estimate_message(m) for m in transcript if m.role != "system")

    def trim(self, transcript: list[Message]) -> int:
        """Prune ``transcript`` in place. Returns the number of entries removed."""
        if len(transcript) <= 2:
            return 0

        limit = self.budget.max_history_tokens
        removed = 0
        while len(transcript) > self.MIN_KEPT and self.history_tokens(transcript) > limit:
            index = self._oldest_non_system(transcript)
            if index is None:
                break
            del transcript[index]
            removed += 1

        # A tool result whose assistant turn was pruned can no longer be paired.
        while len(transcript) > self.MIN_KEPT:
            index = self._oldest_non_system(transcript)
            if index is None or transcript[index].role != "tool":
                break
            del transcript[index]
            removed += 1

        if removed:
            log.info(
                "History trimmed",
                removed=removed,
                remaining=len(transcript),
                history_tokens=self.history_tokens(transcript),
                limit=limit,
            )
        return removed

    @staticmethod
    def _oldest_non_system(transcript: list[Message]) -> int | None:
        for index, message in enumerate(transcript):
            if message.role != "system":
                return index
        return None
