"""Reasoning loop: prompt, stream, execute tools, repeat."""

import asyncio
import inspect
import json
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator

from switchback.budget import HistoryManager, TokenBudget
from switchback.config import AgentConfig, get_config
from switchback.confirmation import ConfirmationBroker, ConfirmationRequest
from switchback.exceptions import MaxIterationsError
from switchback.llm import ChatOptions, LLMBackend, Message, ToolCall, ToolDefinition
from switchback.llm.registry import BackendRegistry, get_registry
from switchback.logging import get_logger
from switchback.memory import MemoryProvider
from switchback.system_prompt import PromptTemplates
from switchback.tools import ToolRegistry, get_tool_registry

log = get_logger(__name__)

REJECTED_RESULT = json.dumps({"rejected": True, "message": "User rejected this tool execution"})


class AgentCallbacks:
    """UI hooks for a turn. Every method may be sync or async.

    ``confirm_tool`` returns True or False to decide immediately, or None
    when the answer will arrive later through ``Agent.confirmations``.
    """

    def on_thinking(self, iteration: int) -> Any:
        return None

    def on_delta(self, text: str) -> Any:
        return None

    def on_tool_call(self, call: ToolCall) -> Any:
        return None

    def on_tool_result(self, call: ToolCall, result: str) -> Any:
        return None

    def on_response(self, content: str) -> Any:
        return None

    def on_error(self, error: Exception) -> Any:
        return None

    def on_cancelled(self) -> Any:
        return None

    def confirm_tool(self, request: ConfirmationRequest) -> Any:
        return False


@dataclass
class DeltaEvent:
    text: str


@dataclass
class ToolCallEvent:
    call: ToolCall


@dataclass
class ToolResultEvent:
    call: ToolCall
    result: str


@dataclass
class ConfirmationEvent:
    request_id: str
    call: ToolCall


@dataclass
class ResponseEvent:
    content: str


@dataclass
class ErrorEvent:
    error: Exception


AgentEvent = DeltaEvent | ToolCallEvent | ToolResultEvent | ConfirmationEvent | ResponseEvent | ErrorEvent


class _QueueRelay(AgentCallbacks):
    """Turns callbacks into events on a bounded queue."""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    async def on_delta(self, text: str) -> None:
        await self.queue.put(DeltaEvent(text))

    async def on_tool_call(self, call: ToolCall) -> None:
        await self.queue.put(ToolCallEvent(call))

    async def on_tool_result(self, call: ToolCall, result: str) -> None:
        await self.queue.put(ToolResultEvent(call, result))

    async def on_response(self, content: str) -> None:
        await self.queue.put(ResponseEvent(content))

    async def confirm_tool(self, request: ConfirmationRequest) -> None:
        await self.queue.put(ConfirmationEvent(request.id, request.call))
        return None


def _message_from_dict(data: dict[str, Any]) -> Message:
    calls = data.get("tool_calls") or None
    if calls:
        calls = [c if isinstance(c, ToolCall) else ToolCall(**c) for c in calls]
    return Message(
        role=data["role"],
        content=data.get("content"),
        tool_calls=calls,
        tool_call_id=data.get("tool_call_id"),
        name=data.get("name"),
    )


class Agent:
    """Conversation driver shared by every backend."""

    def __init__(
        self,
        registry: BackendRegistry | None = None,
        tools: ToolRegistry | None = None,
        config: AgentConfig | None = None,
        budget: TokenBudget | None = None,
        memory: MemoryProvider | None = None,
        callbacks: AgentCallbacks | None = None,
        prompts: PromptTemplates | None = None,
    ):
        if config is None or budget is None:
            settings = get_config()
            config = config or settings.agent
            budget = budget or settings.budget.to_budget()
        self.registry = registry or get_registry()
        self.tools = tools or get_tool_registry()
        self.config = config
        self.history_manager = HistoryManager(budget)
        self.memory = memory
        self.callbacks = callbacks or AgentCallbacks()
        self.prompts = prompts or PromptTemplates()
        self.confirmations = ConfirmationBroker()
        self.auto_approve = config.auto_approve
        self.max_iterations = max(1, int(config.max_iterations))
        self.model: str | None = None
        self._messages: list[Message] = []
        self._turn_lock = asyncio.Lock()

    # -- transcript -----------------------------------------------------

    def history(self) -> list[Message]:
        return list(self._messages)

    def reset(self) -> None:
        self._messages.clear()
        log.info("Conversation reset")

    def load_messages(self, messages: list[Message | dict[str, Any]]) -> None:
        """Replace the transcript, e.g. with a previously saved conversation."""
        self._messages = [m if isinstance(m, Message) else _message_from_dict(m) for m in messages]

    def messages_for_save(self) -> list[dict[str, Any]]:
        """Serializable transcript without the system prompt."""
        return [asdict(m) for m in self._messages if m.role != "system"]

    def toggle_auto_approve(self) -> bool:
        self.auto_approve = not self.auto_approve
        log.info("Auto-approve toggled", enabled=self.auto_approve)
        return self.auto_approve

    def set_model(self, model: str | None) -> None:
        self.model = model or None

    async def switch_backend(self, backend_id: str) -> LLMBackend:
        """Switch backends between turns; waits for a running turn to finish."""
        async with self._turn_lock:
            backend = await self.registry.set_active(backend_id)
            self.model = None
            return backend

    # -- callbacks ------------------------------------------------------

    async def _notify(self, callbacks: AgentCallbacks, hook: str, *args: Any) -> Any:
        """Invoke a UI hook; failures are logged and never end the turn."""
        try:
            result = getattr(callbacks, hook)(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            log.warning("Callback failed", hook=hook, error=str(e))
            return None

    # -- prompt ---------------------------------------------------------

    async def _build_system_prompt(self) -> str:
        prompt = self.prompts.render("system_prompt.md", app_name=self.config.app_name)
        if self.memory is None:
            return prompt
        try:
            block = await self.memory.for_prompt()
        except Exception as e:
            log.warning("Memory unavailable", error=str(e))
            block = None
        if block:
            prompt = f"{prompt}\n\n{block.strip()}"
        return prompt

    async def _begin_turn(self, text: str) -> None:
        system = Message.system(await self._build_system_prompt())
        if self._messages and self._messages[0].role == "system":
            self._messages[0] = system
        else:
            self._messages.insert(0, system)
        self._messages.append(Message.user(text))
        self.history_manager.trim(self._messages)

    # -- tools ----------------------------------------------------------

    async def _confirm(self, callbacks: AgentCallbacks, call: ToolCall) -> bool:
        request = self.confirmations.request(call)
        try:
            decision = callbacks.confirm_tool(request)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception as e:
            log.warning("Confirmation callback failed", tool=call.name, error=str(e))
            decision = False
        if decision is not None and not request.resolved:
            self.confirmations.resolve(request.id, bool(decision))
        return await self.confirmations.wait(request)

    async def _run_tool(self, callbacks: AgentCallbacks, call: ToolCall) -> str:
        if self.tools.requires_confirmation(call.name) and not self.auto_approve:
            if not await self._confirm(callbacks, call):
                log.info("Tool rejected", tool=call.name)
                return REJECTED_RESULT
        try:
            return await self.tools.execute(call.name, call.arguments)
        except Exception as e:
            log.error("Tool failed", tool=call.name, error=str(e))
            return json.dumps({"error": str(e)})

    # -- loop -----------------------------------------------------------

    async def _iterate(
        self,
        backend: LLMBackend,
        tools: list[ToolDefinition],
        callbacks: AgentCallbacks,
        iteration: int,
    ) -> str | None:
        """One model call plus its tool round. Returns content when the turn is done."""
        await self._notify(callbacks, "on_thinking", iteration)

        async def forward(text: str) -> None:
            await self._notify(callbacks, "on_delta", text)

        response = await backend.chat(
            list(self._messages),
            ChatOptions(model=self.model, tools=tools or None, on_delta=forward),
        )
        calls = response.message.tool_calls or []
        content = response.message.content or ""
        self._messages.append(Message.assistant(content, calls))
        if not calls:
            return content

        log.info("Tool calls requested", iteration=iteration, tools=[c.name for c in calls])
        for call in calls:
            await self._notify(callbacks, "on_tool_call", call)
            result = await self._run_tool(callbacks, call)
            await self._notify(callbacks, "on_tool_result", call, result)
            self._messages.append(Message.tool(call.id, call.name, result))
        return None

    async def run(self, text: str, callbacks: AgentCallbacks | None = None) -> str:
        """Run one user turn to completion and return the final answer.

        Raises:
            NoBackendAvailableError, BackendError from the model call
            MaxIterationsError when tool rounds never settle
        """
        callbacks = callbacks or self.callbacks
        async with self._turn_lock:
            try:
                return await self._run_turn(text, callbacks)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._notify(callbacks, "on_error", e)
                raise

    async def _run_turn(self, text: str, callbacks: AgentCallbacks) -> str:
        backend = await self.registry.get_active()
        await self._begin_turn(text)
        tools = self.tools.definitions_limited(backend.info.capabilities.max_tools)
        log.info("Turn started", backend=backend.info.id, messages=len(self._messages), tools=len(tools))

        for iteration in range(1, self.max_iterations + 1):
            checkpoint = len(self._messages)
            try:
                content = await self._iterate(backend, tools, callbacks, iteration)
            except asyncio.CancelledError:
                del self._messages[checkpoint:]
                self.confirmations.cancel_all()
                log.info("Turn cancelled", iteration=iteration)
                await self._notify(callbacks, "on_cancelled")
                raise
            if content is not None:
                log.info("Turn finished", iterations=iteration, chars=len(content))
                await self._notify(callbacks, "on_response", content)
                return content

        log.warning("Max iterations reached", max_iterations=self.max_iterations)
        raise MaxIterationsError(self.max_iterations)

    async def events(self, text: str) -> AsyncIterator[AgentEvent]:
        """Run a turn and yield its events.

        Confirmation events must be answered with
        ``agent.confirmations.resolve(event.request_id, approved)``.
        A failed turn yields an ErrorEvent and then re-raises.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        task = asyncio.create_task(self.run(text, callbacks=_QueueRelay(queue)))
        getter: asyncio.Future | None = None
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                error = task.exception()
                if error is not None:
                    yield ErrorEvent(error)
                    raise error
                return
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    log.debug("Cancelled turn raised", error=str(e))
