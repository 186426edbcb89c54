"""AgentLoop-AI.

This package drives a long-running, tool-using AI agent through an iterative
execution loop and keeps enough durable state to suspend and later resume it.

High-level architecture
-----------------------

One run is a sequence of cooperative asynchronous stages:

- **Model call**: the prompt is assembled from the append-only message history
  plus any activated observational-memory summaries, then sent to the first
  candidate model that answers.
- **Tool dispatch**: requested tool calls execute under a concurrency limit,
  gated by permission policy, human approval and pre/post hooks.
- **Completion scoring**: pluggable scorers decide whether the task is done.
- **Persistence**: step results merge transactionally into the run's snapshot.

Core subpackages
----------------

- ``agentloop_ai.agent_core``:

  - A LangGraph-based step loop with suspend/resume and cooperative abort.
  - Tool dispatcher, permission policy and approval gate.
  - Completion scorer runner and feedback formatting.
  - Snapshot repository interfaces with SQL and in-memory implementations.
  - The background observational-memory pipeline.

- ``agentloop_ai.core``:

  - Settings, logging, monitoring and the shared error taxonomy.

Typical workflow
----------------

Most integrations should use ``agentloop_ai.agent_core.factory.build_engine``:

1. Build an engine with one or more candidate models and extra tools.
2. ``await engine.run(messages, max_iterations=...)``.
3. If the outcome is suspended, answer it and ``await engine.resume(run_id, data)``.
4. ``await engine.abort(run_id)`` stops a run at its next cooperative check.
"""
