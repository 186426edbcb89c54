"""Tool registry and per-run tool map resolution.

``create_dynamic_tools`` is called at the start of every iteration so that
permission changes (a tool newly set to ``deny``, a session grant) take effect
on the next model call without rebuilding the engine.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Union

from ..policy.models import PermissionState
from ..schemas.domain import PermissionPolicy, ToolCategory
from .base import Tool
from .builtin import BUILTIN_TOOLS

logger = logging.getLogger(__name__)


TOOL_CATEGORIES: Dict[str, ToolCategory] = {
    "ask_user": ToolCategory.other,
    "view": ToolCategory.read,
    "write_file": ToolCategory.edit,
    "execute_command": ToolCategory.execute,
}


def get_tool_category(tool: Tool) -> Optional[ToolCategory]:
    """Category declared by the tool, else the built-in mapping, else None."""
    declared = getattr(tool, "category", None)
    if declared is not None:
        return ToolCategory(declared)
    return TOOL_CATEGORIES.get(tool.name)


class ToolRegistry:
    """
    In-memory mapping of tool names to implementations.

    Notes:
        - ``register`` overwrites any existing mapping for the tool name.
        - ``get`` will raise ``KeyError`` if the tool is missing.
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        return self._tools[name]

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def as_dict(self) -> Dict[str, Tool]:
        return dict(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


ExtraTools = Union[Mapping[str, Tool], Iterable[Tool], None]


def _normalize_extra(extra_tools: ExtraTools) -> Dict[str, Tool]:
    if extra_tools is None:
        return {}
    if isinstance(extra_tools, Mapping):
        return dict(extra_tools)
    return {t.name: t for t in extra_tools}


def create_dynamic_tools(
    permissions: PermissionState,
    extra_tools: ExtraTools = None,
    *,
    builtins: Iterable[Tool] = BUILTIN_TOOLS,
) -> Dict[str, Tool]:
    """
    Resolve the tool map offered to the model for the next call.

    Args:
        permissions: The run's permission state.
        extra_tools: Tools added on top of the built-ins, as a name mapping or an
            iterable. An extra tool with a built-in's name replaces it.
        builtins: Built-in tools (defaults to ``BUILTIN_TOOLS``).

    Returns:
        Name to tool mapping with every tool whose resolved policy is ``deny``
        removed.
    """
    tools: Dict[str, Tool] = {t.name: t for t in builtins}
    tools.update(_normalize_extra(extra_tools))

    resolved: Dict[str, Tool] = {}
    for name, t in tools.items():
        if permissions.policy_for(name, get_tool_category(t)) is PermissionPolicy.deny:
            logger.debug(f"Tool '{name}' hidden by deny policy")
            continue
        resolved[name] = t
    return resolved
