"""Long-term memory injected into the system prompt."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class MemoryProvider(Protocol):
    """Anything that can contribute a memory block to the system prompt."""

    async def for_prompt(self) -> str | None: ...


class StaticMemory:
    """In-process list of remembered facts."""

    def __init__(self, facts: list[str] | None = None):
        self.facts: list[str] = [f.strip() for f in facts or [] if f and f.strip()]

    def remember(self, fact: str) -> None:
        cleaned = " ".join(fact.split())
        if cleaned and cleaned not in self.facts:
            self.facts.append(cleaned)

    def forget_all(self) -> None:
        self.facts.clear()

    async def for_prompt(self) -> str | None:
        if not self.facts:
            return None
        lines = "\n".join(f"- {fact}" for fact in self.facts)
        return f"Long-term memory:\n{lines}"
