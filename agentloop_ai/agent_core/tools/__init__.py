"""Tools, tool resolution and the tool dispatcher."""

from .base import FunctionTool, Tool, ToolContext, ToolResult, tool
from .builtin import BUILTIN_TOOLS, AskUserTool, ExecuteCommandTool, ToolBackends, ViewTool, WriteFileTool
from .dispatcher import ToolDispatcher
from .hooks import HookManager, HookOutcome, ToolHookEvent
from .registry import TOOL_CATEGORIES, ToolRegistry, create_dynamic_tools, get_tool_category

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolResult",
    "tool",
    "BUILTIN_TOOLS",
    "AskUserTool",
    "ExecuteCommandTool",
    "ToolBackends",
    "ViewTool",
    "WriteFileTool",
    "ToolDispatcher",
    "HookManager",
    "HookOutcome",
    "ToolHookEvent",
    "TOOL_CATEGORIES",
    "ToolRegistry",
    "create_dynamic_tools",
    "get_tool_category",
]
