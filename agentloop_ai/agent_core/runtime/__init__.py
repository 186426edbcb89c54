"""LangGraph-based step loop for agent runs.

The runtime composes the model invoker, the tool dispatcher, the completion
scorers, snapshot persistence and observational memory into the iterative
agent loop:

- each iteration calls the model, executes any requested tool calls and folds
  their results into the message history;
- a final answer is checked by the completion scorers;
- every iteration is merged into the run's snapshot so a suspended run can be
  resumed later, possibly by another process.

The main entry point is ``AgentEngine``; ``EngineDeps`` bundles what it needs.
"""

from .engine import AgentEngine
from .models import EngineDeps, RunContext

__all__ = [
    "AgentEngine",
    "EngineDeps",
    "RunContext",
]
