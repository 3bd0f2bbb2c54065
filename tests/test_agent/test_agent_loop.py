import asyncio
import json

import pytest

from switchback.agent import Agent, AgentCallbacks
from switchback.budget import TokenBudget
from switchback.config import AgentConfig
from switchback.exceptions import BackendAPIError, MaxIterationsError
from switchback.llm import (
    BackendCapabilities,
    BackendInfo,
    BackendStatus,
    ChatResponse,
    LLMBackend,
    Message,
    TextDelta,
    ToolCall,
    ToolPriority,
)
from switchback.llm.registry import BackendRegistry
from switchback.memory import StaticMemory
from switchback.system_prompt import PromptTemplates
from switchback.tools.registry import Tool, ToolRegistry


class ScriptedBackend(LLMBackend):
    """Replays scripted replies; a reply is text, a ToolCall list, or an Exception."""

    def __init__(self, replies, max_tools: int | None = None, backend_id: str = "scripted"):
        self.info = BackendInfo(
            id=backend_id,
            name="Scripted",
            description="Scripted test backend",
            capabilities=BackendCapabilities(max_tools=max_tools),
        )
        self.replies = list(replies)
        self.requests: list[dict] = []
        self.initialized = 0

    async def probe(self) -> BackendStatus:
        return BackendStatus.ok(model="scripted-1")

    async def initialize(self) -> None:
        self.initialized += 1

    async def stream(self, messages, options=None):
        self.requests.append(
            {
                "messages": list(messages),
                "tools": [t.name for t in (options.tools or [])] if options else [],
                "model": options.model if options else None,
            }
        )
        reply = self.replies.pop(0) if self.replies else "done"
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = await reply()
        if isinstance(reply, str):
            for word in reply.split(" "):
                yield TextDelta(word + " ")
            yield ChatResponse(message=Message.assistant(reply))
        else:
            yield ChatResponse(message=Message.assistant(None, reply))


class EchoTool(Tool):
    name = "echo"
    description = "Echo text"
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, **kwargs):
        self.calls.append(kwargs["text"])
        return f"echo: {kwargs['text']}"


class DeleteTool(Tool):
    name = "delete_file"
    description = "Delete a file"
    parameters = {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}
    requires_confirmation = True

    def __init__(self):
        self.deleted: list[str] = []

    async def execute(self, **kwargs):
        self.deleted.append(kwargs["path"])
        return "deleted"


class BlockingTool(Tool):
    name = "wait"
    description = "Waits until cancelled"
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 30.0

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, **kwargs):
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "never"


class RecordingCallbacks(AgentCallbacks):
    def __init__(self, approve=False):
        self.approve = approve
        self.events: list[tuple] = []

    def on_delta(self, text):
        self.events.append(("delta", text))

    def on_tool_call(self, call):
        self.events.append(("tool_call", call.name))

    def on_tool_result(self, call, result):
        self.events.append(("tool_result", call.name, result))

    def on_response(self, content):
        self.events.append(("response", content))

    def on_cancelled(self):
        self.events.append(("cancelled",))

    async def confirm_tool(self, request):
        self.events.append(("confirm", request.call.name))
        return self.approve


def _call(name: str, arguments: dict, call_id: str = "call_1") -> list[ToolCall]:
    return [ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))]


def _agent(backend, tools=(), callbacks=None, memory=None, tmp_path=None, **config):
    registry = BackendRegistry()
    registry.register(backend)
    tool_registry = ToolRegistry()
    tool_registry.register_many(list(tools))
    return Agent(
        registry=registry,
        tools=tool_registry,
        config=AgentConfig(**config),
        budget=TokenBudget(),
        memory=memory,
        callbacks=callbacks,
        prompts=PromptTemplates(personal_dir=tmp_path) if tmp_path else None,
    )


@pytest.mark.asyncio
async def test_tool_round_then_answer_takes_two_iterations(tmp_path):
    backend = ScriptedBackend([_call("echo", {"text": "hi"}), "All done"])
    echo = EchoTool()
    agent = _agent(backend, [echo], tmp_path=tmp_path)

    result = await agent.run("say hi")

    assert result == "All done"
    assert len(backend.requests) == 2
    assert echo.calls == ["hi"]
    assert [m.role for m in agent.history()] == ["system", "user", "assistant", "tool", "assistant"]
    tool_message = agent.history()[3]
    assert tool_message.tool_call_id == "call_1"
    assert tool_message.content == "echo: hi"
    assert backend.requests[1]["messages"][-1].role == "tool"
    assert backend.initialized == 1


@pytest.mark.asyncio
async def test_iteration_ceiling_raises_before_extra_backend_call(tmp_path):
    backend = ScriptedBackend([_call("echo", {"text": str(i)}, f"call_{i}") for i in range(10)])
    agent = _agent(backend, [EchoTool()], tmp_path=tmp_path, max_iterations=3)

    with pytest.raises(MaxIterationsError):
        await agent.run("loop forever")

    assert len(backend.requests) == 3
    assert [m.role for m in agent.history()].count("tool") == 3


@pytest.mark.asyncio
async def test_rejected_tool_is_never_executed(tmp_path):
    backend = ScriptedBackend([_call("delete_file", {"path": "/etc/hosts"}), "Okay, skipped."])
    tool = DeleteTool()
    callbacks = RecordingCallbacks(approve=False)
    agent = _agent(backend, [tool], callbacks=callbacks, tmp_path=tmp_path)

    result = await agent.run("delete hosts")

    assert result == "Okay, skipped."
    assert tool.deleted == []
    payload = json.loads(agent.history()[3].content)
    assert payload == {"rejected": True, "message": "User rejected this tool execution"}
    assert ("confirm", "delete_file") in callbacks.events
    assert agent.confirmations.pending == []


@pytest.mark.asyncio
async def test_default_callbacks_reject_confirmation_tools(tmp_path):
    backend = ScriptedBackend([_call("delete_file", {"path": "a"}), "fine"])
    tool = DeleteTool()
    agent = _agent(backend, [tool], tmp_path=tmp_path)

    await agent.run("delete a")

    assert tool.deleted == []


@pytest.mark.asyncio
async def test_approved_and_auto_approved_tools_execute(tmp_path):
    tool = DeleteTool()
    approved = _agent(
        ScriptedBackend([_call("delete_file", {"path": "a"}), "done"]),
        [tool],
        callbacks=RecordingCallbacks(approve=True),
        tmp_path=tmp_path,
    )
    await approved.run("delete a")

    callbacks = RecordingCallbacks(approve=False)
    auto = _agent(
        ScriptedBackend([_call("delete_file", {"path": "b"}), "done"]),
        [tool],
        callbacks=callbacks,
        tmp_path=tmp_path,
        auto_approve=True,
    )
    await auto.run("delete b")

    assert tool.deleted == ["a", "b"]
    assert not any(event[0] == "confirm" for event in callbacks.events)


@pytest.mark.asyncio
async def test_tool_failures_become_error_results_and_loop_continues(tmp_path):
    backend = ScriptedBackend([_call("missing_tool", {}), _call("echo", {}), "recovered"])
    agent = _agent(backend, [EchoTool()], tmp_path=tmp_path)

    result = await agent.run("try things")

    assert result == "recovered"
    tool_results = [m.content for m in agent.history() if m.role == "tool"]
    assert "Tool not found: missing_tool" in json.loads(tool_results[0])["error"]
    assert "Missing required argument: text" in json.loads(tool_results[1])["error"]


@pytest.mark.asyncio
async def test_callbacks_see_deltas_tool_traffic_and_response_in_order(tmp_path):
    callbacks = RecordingCallbacks()
    backend = ScriptedBackend([_call("echo", {"text": "x"}), "two words"])
    agent = _agent(backend, [EchoTool()], callbacks=callbacks, tmp_path=tmp_path)

    await agent.run("go")

    assert callbacks.events == [
        ("tool_call", "echo"),
        ("tool_result", "echo", "echo: x"),
        ("delta", "two "),
        ("delta", "words "),
        ("response", "two words"),
    ]


@pytest.mark.asyncio
async def test_failing_callbacks_do_not_break_the_turn(tmp_path):
    class Broken(AgentCallbacks):
        def on_delta(self, text):
            raise RuntimeError("display gone")

    agent = _agent(ScriptedBackend(["still works"]), callbacks=Broken(), tmp_path=tmp_path)

    assert await agent.run("hi") == "still works"


@pytest.mark.asyncio
async def test_cancellation_rolls_back_the_inflight_iteration(tmp_path):
    tool = BlockingTool()
    callbacks = RecordingCallbacks()
    backend = ScriptedBackend([_call("wait", {})])
    agent = _agent(backend, [tool], callbacks=callbacks, tmp_path=tmp_path)

    task = asyncio.create_task(agent.run("wait please"))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert tool.cancelled is True
    assert [m.role for m in agent.history()] == ["system", "user"]
    assert ("cancelled",) in callbacks.events


@pytest.mark.asyncio
async def test_backend_errors_propagate_to_the_caller(tmp_path):
    agent = _agent(ScriptedBackend([BackendAPIError("overloaded", status_code=529)]), tmp_path=tmp_path)

    with pytest.raises(BackendAPIError, match="overloaded"):
        await agent.run("hi")


@pytest.mark.asyncio
async def test_system_prompt_is_rebuilt_once_per_turn_with_memory(tmp_path):
    memory = StaticMemory(["User prefers metric units"])
    backend = ScriptedBackend(["first", "second"])
    agent = _agent(backend, memory=memory, tmp_path=tmp_path, app_name="Testbot")

    await agent.run("one")
    memory.remember("User lives in Oslo")
    await agent.run("two")

    history = agent.history()
    assert [m.role for m in history].count("system") == 1
    system = history[0].content
    assert system.startswith("You are Testbot")
    assert "- User prefers metric units" in system
    assert "- User lives in Oslo" in system
    assert [m.content for m in history[1:]] == ["one", "first", "two", "second"]


@pytest.mark.asyncio
async def test_tool_list_respects_backend_ceiling(tmp_path):
    class Ranked(EchoTool):
        def __init__(self, name, priority):
            super().__init__()
            self.name = name
            self.priority = priority

    tools = [
        Ranked("extra", ToolPriority.EXTENDED),
        Ranked("core", ToolPriority.CORE),
        Ranked("important", ToolPriority.IMPORTANT),
    ]
    backend = ScriptedBackend(["ok"], max_tools=2)
    agent = _agent(backend, tools, tmp_path=tmp_path)

    await agent.run("hi")

    assert backend.requests[0]["tools"] == ["core", "important"]


@pytest.mark.asyncio
async def test_model_override_is_sent_to_backend(tmp_path):
    backend = ScriptedBackend(["ok"])
    agent = _agent(backend, tmp_path=tmp_path)
    agent.set_model("bigger-model")

    await agent.run("hi")

    assert backend.requests[0]["model"] == "bigger-model"


@pytest.mark.asyncio
async def test_switch_backend_waits_for_registry(tmp_path):
    first = ScriptedBackend(["from first"], backend_id="openai")
    second = ScriptedBackend(["from second"], backend_id="ollama")
    registry = BackendRegistry()
    registry.register(first)
    registry.register(second)
    agent = Agent(
        registry=registry,
        tools=ToolRegistry(),
        config=AgentConfig(),
        budget=TokenBudget(),
        prompts=PromptTemplates(personal_dir=tmp_path),
    )

    assert await agent.run("a") == "from first"
    await agent.switch_backend("ollama")
    assert await agent.run("b") == "from second"


def test_saved_messages_round_trip_without_system_prompt():
    agent = Agent(registry=BackendRegistry(), tools=ToolRegistry(), config=AgentConfig(), budget=TokenBudget())
    call = ToolCall(id="c1", name="echo", arguments='{"text": "x"}')
    agent.load_messages(
        [
            Message.system("old prompt"),
            Message.user("hi"),
            Message.assistant(None, [call]),
            Message.tool("c1", "echo", "echo: x"),
        ]
    )

    saved = agent.messages_for_save()
    assert [m["role"] for m in saved] == ["user", "assistant", "tool"]

    restored = Agent(registry=BackendRegistry(), tools=ToolRegistry(), config=AgentConfig(), budget=TokenBudget())
    restored.load_messages(saved)
    assert restored.history()[1].tool_calls == [call]

    restored.reset()
    assert restored.history() == []


def test_toggle_auto_approve():
    agent = Agent(registry=BackendRegistry(), tools=ToolRegistry(), config=AgentConfig(), budget=TokenBudget())

    assert agent.toggle_auto_approve() is True
    assert agent.toggle_auto_approve() is False
