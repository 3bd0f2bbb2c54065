"""Tool registry and base tool class."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from switchback.exceptions import ToolExecutionError, ToolNotFoundError
from switchback.llm import ToolDefinition, ToolPriority, limit_tools
from switchback.logging import get_logger

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Structured result a tool may return instead of plain text."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    requires_confirmation: bool = False
    priority: ToolPriority = ToolPriority.EXTENDED
    category: str = "general"
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str | dict[str, Any] | ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            Result text, a JSON-serializable dict, or a ToolResult
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Describe the tool for a backend."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            requires_confirmation=self.requires_confirmation,
            priority=self.priority,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check that every required argument is present.

        Raises:
            ToolExecutionError if one is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


def _render_result(name: str, result: Any) -> str:
    if isinstance(result, ToolResult):
        if not result.success:
            raise ToolExecutionError(name, result.error or "Tool execution failed")
        return result.content
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        return json.dumps(result)
    if result is None:
        return ""
    return str(result)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def register_many(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def names(self) -> list[str]:
        return list(self._tools)

    def list(self) -> list[ToolDefinition]:
        """Descriptors for every registered tool, in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    def definitions(self) -> list[ToolDefinition]:
        return self.list()

    def definitions_limited(self, max_tools: int | None) -> list[ToolDefinition]:
        """Descriptors capped at ``max_tools``, core tiers kept first."""
        return limit_tools(self.list(), max_tools)

    def requires_confirmation(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.requires_confirmation)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    def _decode_arguments(name: str, arguments_json: str | None) -> dict[str, Any]:
        try:
            arguments = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as e:
            raise ToolExecutionError(name, f"Invalid JSON arguments: {e}") from e
        if not isinstance(arguments, dict):
            raise ToolExecutionError(name, "Arguments must be a JSON object")
        return arguments

    async def execute(
        self,
        name: str,
        arguments_json: str | None,
        abort_event: asyncio.Event | None = None,
    ) -> str:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments_json: Arguments as JSON object text
            abort_event: Optional event that stops the tool when set

        Returns:
            Result text

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if arguments are invalid or execution fails
        """
        tool = self.get(name)
        arguments = self._decode_arguments(name, arguments_json)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[Any] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))

            execute_task = asyncio.create_task(tool.execute(**arguments))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)

            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                output = _render_result(name, await execute_task)
                log.info("Tool executed", tool=name, chars=len(output))
                return output

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
