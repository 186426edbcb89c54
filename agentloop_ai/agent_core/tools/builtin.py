from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..schemas.domain import ToolCategory
from .base import ToolContext, ToolResult


@dataclass(frozen=True)
class ToolBackends:
    """Concrete implementations the built-in tools delegate to.

    Each backend is an async callable. A built-in whose backend is missing
    reports a structured error instead of raising.
    """

    read_file: Optional[Callable[..., Awaitable[Any]]] = None
    write_file: Optional[Callable[..., Awaitable[Any]]] = None
    execute_command: Optional[Callable[..., Awaitable[Any]]] = None


class AskUserArgs(BaseModel):
    """Input schema for the ask_user tool."""

    question: str = Field(..., description="The question to show the user.")
    options: Optional[List[str]] = Field(default=None, description="Suggested answers the user can pick from.")


class ViewArgs(BaseModel):
    """Input schema for the view tool."""

    path: str = Field(..., description="Path of the file to read.")
    offset: Optional[int] = Field(default=None, ge=0, description="First line to read, 0-based.")
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum number of lines to read.")


class WriteFileArgs(BaseModel):
    """Input schema for the write_file tool."""

    path: str = Field(..., description="Path of the file to write.")
    content: str = Field(..., description="Full content of the file.")


class ExecuteCommandArgs(BaseModel):
    """Input schema for the execute_command tool."""

    command: str = Field(..., description="Shell command to run.")
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds before the command is killed.")


def _schema(model: type[BaseModel]):
    return field(default_factory=model.model_json_schema, hash=False, compare=False)


def _backend(ctx: ToolContext, name: str):
    return getattr(ctx.backends, name, None) if ctx.backends is not None else None


def _wrap_output(result: Any) -> ToolResult:
    if isinstance(result, ToolResult):
        return result
    if isinstance(result, dict):
        return ToolResult(ok="error" not in result, output=result)
    return ToolResult(ok=True, output={"result": result})


@dataclass(frozen=True)
class AskUserTool:
    """
    Ask the user a question and suspend the run until it is answered.

    The question (and optional choices) is persisted with the suspended step;
    ``AgentEngine.resume`` hands the answer back as this call's result.
    """

    name: str = "ask_user"
    description: str = "Ask the user a clarifying question and wait for the answer."
    category: Optional[ToolCategory] = ToolCategory.other
    parameters: Dict[str, Any] = _schema(AskUserArgs)

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> ToolResult:
        """
        Args:
            ctx: The execution context.
            args: Dictionary of arguments:
                - question (str): The question to show.
                - options (list, optional): Suggested answers.

        Returns:
            Never returns normally when a question is given; suspends the run.
        """
        question = str(args.get("question") or "").strip()
        if not question:
            return ToolResult(ok=False, output={"error": "missing question"})
        payload: Dict[str, Any] = {"question": question}
        if args.get("options"):
            payload["options"] = list(args["options"])
        ctx.suspend(payload)
        return ToolResult(ok=False, output={"error": "unreachable"})


@dataclass(frozen=True)
class ViewTool:
    """Read a file (or a line range of it) through the ``read_file`` backend."""

    name: str = "view"
    description: str = "Read the contents of a file."
    category: Optional[ToolCategory] = ToolCategory.read
    parameters: Dict[str, Any] = _schema(ViewArgs)

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> ToolResult:
        path = str(args.get("path") or args.get("file_path") or "").strip()
        if not path:
            return ToolResult(ok=False, output={"error": "missing path"})
        fn = _backend(ctx, "read_file")
        if fn is None:
            return ToolResult(ok=False, output={"error": "read_file backend not configured"})
        result = await fn(path=path, offset=args.get("offset"), limit=args.get("limit"))
        if isinstance(result, str):
            return ToolResult(ok=True, output={"path": path, "content": result})
        return _wrap_output(result)


@dataclass(frozen=True)
class WriteFileTool:
    """Create or overwrite a file through the ``write_file`` backend."""

    name: str = "write_file"
    description: str = "Write content to a file, replacing it if it exists."
    category: Optional[ToolCategory] = ToolCategory.edit
    parameters: Dict[str, Any] = _schema(WriteFileArgs)

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> ToolResult:
        path = str(args.get("path") or args.get("file_path") or "").strip()
        if not path:
            return ToolResult(ok=False, output={"error": "missing path"})
        if "content" not in args:
            return ToolResult(ok=False, output={"error": "missing content"})
        fn = _backend(ctx, "write_file")
        if fn is None:
            return ToolResult(ok=False, output={"error": "write_file backend not configured"})
        result = await fn(path=path, content=str(args["content"]))
        if result is None:
            return ToolResult(ok=True, output={"path": path, "written": True})
        return _wrap_output(result)


@dataclass(frozen=True)
class ExecuteCommandTool:
    """
    Run a shell command through the ``execute_command`` backend.

    Output chunks reported by the backend through ``on_output`` are forwarded
    as ``tool.update`` events.
    """

    name: str = "execute_command"
    description: str = "Execute a shell command and return its output."
    category: Optional[ToolCategory] = ToolCategory.execute
    parameters: Dict[str, Any] = _schema(ExecuteCommandArgs)

    async def execute(self, ctx: ToolContext, *, args: Dict[str, Any]) -> ToolResult:
        command = str(args.get("command") or args.get("cmd") or "").strip()
        if not command:
            return ToolResult(ok=False, output={"error": "missing command"})
        fn = _backend(ctx, "execute_command")
        if fn is None:
            return ToolResult(ok=False, output={"error": "execute_command backend not configured"})
        result = await fn(command=command, timeout=args.get("timeout"), on_output=ctx.update)
        return _wrap_output(result)


BUILTIN_TOOLS = (AskUserTool(), ViewTool(), WriteFileTool(), ExecuteCommandTool())
