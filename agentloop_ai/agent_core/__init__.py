"""Agent step loop, tool dispatch, completion scoring, persistence and memory.

This package contains the "engine room" of the agent system.

Design overview
---------------

- ``runtime.AgentEngine`` runs the loop as a LangGraph state machine. The loop
  owns the run's ``MessageList``; every other component reads it.
- ``tools.ToolDispatcher`` executes tool calls under a concurrency limit,
  consulting ``policy.PermissionState`` and ``policy.ApprovalGate`` and running
  pre/post hooks.
- ``scoring.run_completion_scorers`` decides whether a final answer completes
  the task.
- ``repos.WorkflowSnapshotRepository`` stores one resumable snapshot per run;
  every update is a transactional read-merge-write.
- ``memory.ObservationalMemory`` summarizes history in the background.
- ``events.EventBus`` streams every state transition to external observers.

Typical usage
-------------

1. ``engine = build_engine(models=[...], extra_tools=[...])``.
2. ``outcome = await engine.run("task", max_iterations=20)``.
3. When ``outcome.status`` is ``suspended``, ``await engine.resume(outcome.run_id, answer)``.
"""

from .events import AgentEvent, EventBus
from .factory import build_engine, build_memory, build_sql_repository
from .messages import Message, MessageList
from .runtime import AgentEngine, EngineDeps
from .schemas.domain import (
    ApprovalDecision,
    FinishReason,
    PermissionPolicy,
    RunOutcome,
    RunStatus,
    ToolCategory,
)

__all__ = [
    "AgentEvent",
    "EventBus",
    "build_engine",
    "build_memory",
    "build_sql_repository",
    "Message",
    "MessageList",
    "AgentEngine",
    "EngineDeps",
    "ApprovalDecision",
    "FinishReason",
    "PermissionPolicy",
    "RunOutcome",
    "RunStatus",
    "ToolCategory",
]
