from __future__ import annotations

"""Convenience factories for wiring the agent core.

This module contains small helpers to build an ``AgentEngine`` with sensible
defaults (in-memory snapshots, a fresh event bus, approval gate and hook
manager) and to build the SQL snapshot repository from a database URL.

The intent is to keep application wiring and tests concise, while still
allowing advanced deployments to provide their own repository, dispatcher and
memory pipeline.
"""

from typing import Any, Optional, Sequence

from ..core.config import Settings
from ..core.config import settings as default_settings
from .events import EventBus
from .memory import ObservationalMemory, ObservationalMemoryConfig, PydanticAIObserver, PydanticAIReflector
from .memory.agents import Observer, Reflector
from .model_provider import ModelClient, ModelInvoker
from .policy import ApprovalGate
from .repos import (
    InMemoryWorkflowSnapshotRepository,
    SqlWorkflowSnapshotRepository,
    WorkflowSnapshotRepository,
    create_engine,
    create_sessionmaker,
)
from .runtime import AgentEngine, EngineDeps
from .scoring import Scorer
from .tools import BUILTIN_TOOLS, HookManager, Tool, ToolDispatcher
from .tools.registry import ExtraTools


def build_sql_repository(db_url: Optional[str] = None) -> SqlWorkflowSnapshotRepository:
    """Build the SQL snapshot repository for ``db_url`` (defaults to ``DATABASE_URL``).

    Tables are not created here; run the alembic migration, or ``create_all``
    for tests and local development.
    """
    engine = create_engine(db_url or default_settings.database_url)
    return SqlWorkflowSnapshotRepository(create_sessionmaker(engine))


def build_memory(
    *,
    observer: Observer,
    reflector: Reflector,
    bus: EventBus,
    snapshots: Optional[WorkflowSnapshotRepository] = None,
    settings: Optional[Settings] = None,
) -> ObservationalMemory:
    """Build the observational-memory pipeline from the ``OM_*`` settings."""
    cfg = (settings or default_settings).memory
    return ObservationalMemory(
        observer=observer,
        reflector=reflector,
        config=ObservationalMemoryConfig(
            message_tokens=cfg.message_tokens,
            observation_tokens=cfg.observation_tokens,
            buffer_tokens=cfg.buffer_tokens,
        ),
        bus=bus,
        snapshots=snapshots,
    )


def build_engine(
    *,
    models: Sequence[ModelClient],
    snapshots: Optional[WorkflowSnapshotRepository] = None,
    bus: Optional[EventBus] = None,
    approvals: Optional[ApprovalGate] = None,
    hooks: Optional[HookManager] = None,
    backends: Any = None,
    extra_tools: ExtraTools = None,
    builtins: Sequence[Tool] = BUILTIN_TOOLS,
    scorers: Sequence[Scorer] = (),
    memory: Optional[ObservationalMemory] = None,
    memory_model: Any = None,
    system_prompt: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> AgentEngine:
    """
    Construct an ``AgentEngine`` from candidate models and optional collaborators.

    Args:
        models: Candidate model clients in priority order.
        snapshots: Snapshot repository; defaults to an in-memory one.
        bus: Event bus shared by every component; a new one when omitted.
        approvals: Approval gate resolving ``ask`` decisions.
        hooks: Pre/post tool hooks.
        backends: Backends for the built-in file and shell tools.
        extra_tools: Tools offered on top of the built-ins.
        builtins: The built-in tools.
        scorers: Completion scorers checked when the model gives a final answer.
        memory: A ready observational-memory pipeline.
        memory_model: A pydantic-ai model for the default observer and
            reflector; used when ``memory`` is not given and ``OM_ENABLED`` is on.
        system_prompt: System prompt sent with every model call.
        settings: Settings to read defaults from.
    """
    settings = settings or default_settings
    loop = settings.loop
    bus = bus or EventBus()
    snapshots = snapshots or InMemoryWorkflowSnapshotRepository()

    if memory is None and memory_model is not None and settings.memory.enabled:
        memory = build_memory(
            observer=PydanticAIObserver(memory_model),
            reflector=PydanticAIReflector(memory_model),
            bus=bus,
            snapshots=snapshots,
            settings=settings,
        )

    invoker = ModelInvoker(
        list(models),
        max_retries=loop.model_max_retries,
        retry_backoff=loop.model_retry_backoff,
        bus=bus,
    )
    dispatcher = ToolDispatcher(
        approvals=approvals or ApprovalGate(),
        hooks=hooks,
        bus=bus,
        backends=backends,
        concurrency_limit=loop.tool_concurrency,
    )
    deps = EngineDeps(
        invoker=invoker,
        snapshots=snapshots,
        dispatcher=dispatcher,
        bus=bus,
        extra_tools=extra_tools,
        builtins=tuple(builtins),
        scorers=tuple(scorers),
        memory=memory,
        system_prompt=system_prompt,
        loop=loop,
        scoring=settings.scoring,
    )
    return AgentEngine(deps=deps)
