"""Tool protocol and execution data models.

A tool is the concrete execution unit behind a model's tool call. The
dispatcher resolves the call's name through the run's tool map and executes the
implementation with a ``ToolContext``.

Tools should:

- return structured outputs, either raw JSON-like values or a ``ToolResult``,
- raise on failure (the dispatcher records the error against the call id),
- avoid permission decisions themselves (policy is enforced by the dispatcher
  before invocation).
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from ...core.errors import ToolSuspended
from ..cancellation import AbortSignal
from ..schemas.domain import ToolCategory


@dataclass(frozen=True)
class ToolContext:
    """Execution context passed to tool implementations.

    Attributes
    ----------
    run_id:
        The run the call belongs to.
    tool_call_id:
        Stable id of the call being executed.
    abort:
        The run's abort signal. Long-running tools may check it.
    backends:
        Injected implementations used by built-in tools (``view``,
        ``write_file``, ``execute_command``).
    """

    run_id: str
    tool_call_id: str
    abort: AbortSignal
    backends: Any = None
    on_update: Optional[Callable[[Any], None]] = None

    def update(self, partial: Any) -> None:
        """Publish partial progress as a ``tool.update`` event."""
        if self.on_update is not None:
            self.on_update(partial)

    def suspend(self, payload: Optional[Dict[str, Any]] = None) -> None:
        """Suspend the run at this tool call; never returns."""
        raise ToolSuspended(payload)


@dataclass(frozen=True)
class ToolResult:
    """Structured tool execution result."""

    ok: bool
    output: Any


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    name: str
    description: str
    category: Optional[ToolCategory]

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> Any: ...


ToolFunction = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class FunctionTool:
    """Adapt a plain (sync or async) callable into a ``Tool``.

    The callable receives the call's arguments as keyword arguments, plus
    ``ctx`` when its signature declares it.
    """

    name: str
    fn: ToolFunction
    description: str = ""
    category: Optional[ToolCategory] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> Any:
        kwargs = dict(args)
        if "ctx" in inspect.signature(self.fn).parameters:
            kwargs["ctx"] = ctx
        result = self.fn(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    name: Optional[str] = None,
    *,
    description: Optional[str] = None,
    category: Optional[ToolCategory] = None,
) -> Callable[[ToolFunction], FunctionTool]:
    """Decorator form of ``FunctionTool``; the docstring becomes the description."""

    def _wrap(fn: ToolFunction) -> FunctionTool:
        return FunctionTool(
            name=name or fn.__name__,
            fn=fn,
            description=description or inspect.getdoc(fn) or "",
            category=category,
        )

    return _wrap
