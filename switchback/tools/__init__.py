"""Tool interface and registry."""

from switchback.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "set_tool_registry",
]
