from __future__ import annotations

"""LangGraph step loop engine.

``AgentEngine`` drives a tool-using agent until the task is done, the
iteration budget runs out, a tool suspends the run, or the run is aborted.

Execution model
---------------

One iteration walks the graph ``prepare -> call_model -> dispatch_tools ->
evaluate -> persist`` and then loops back to ``prepare``; ``finish`` ends it.

1. ``prepare`` checks the abort signal and the iteration budget.
2. ``call_model`` assembles the prompt (observational memory first, then the
   unobserved message window), resolves the tool map, and invokes the model
   candidates. A classified, non-recoverable model error fails the run.
3. ``dispatch_tools`` executes requested tool calls through the dispatcher
   (approval gating, hooks, bounded concurrency) and appends their results.
4. ``evaluate`` decides: tool activity continues the loop; a final answer is
   checked by the completion scorers, whose feedback is appended as a user
   message when they report incomplete.
5. ``persist`` merges the iteration's step result into the snapshot, rewrites
   the resumable ``value`` and hands the history to observational memory.

Suspend/resume
--------------

A tool that calls ``ctx.suspend(payload)`` ends the invocation with status
``suspended``; the snapshot records ``suspendedPaths`` for the iteration's
step. ``resume(run_id, resume_data)`` claims the run (``suspended`` to ``running``
under the row lock, so only one resumer wins), reloads history and
permissions from the snapshot, appends ``resume_data`` as the suspended call's result and continues
with the next iteration.

Abort
-----

``abort(run_id)`` sets the run's abort signal, declines its pending approvals
and cancels its observational-memory worker. The loop observes the signal at
its next check and finishes ``aborted``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from langgraph.graph import END, StateGraph

from ...core.errors import (
    ConfigurationError,
    InvalidRunStateError,
    ModelInvocationError,
    RunNotFoundError,
    SnapshotPersistenceError,
)
from ...core.monitoring import log_run_finished
from ..events import (
    IterationEnd,
    IterationStart,
    RunAborted,
    RunCompleted,
    RunFailed,
    RunResumed,
    RunStarted,
    RunSuspended,
    ScorersResult,
    SnapshotPersisted,
)
from ..messages import Message, MessageList, user_message
from ..model_provider import ModelRequest
from ..policy import PermissionState
from ..schemas.domain import (
    ApprovalDecision,
    FinishReason,
    RunOutcome,
    RunStatus,
    StepResult,
    StepStatus,
    SuspendedMarker,
    ToolCall,
    WorkflowRun,
    WorkflowRunState,
    _now_ms,
)
from ..scoring import CompletionContext, format_completion_feedback, run_completion_scorers
from ..tools import create_dynamic_tools
from .models import EngineDeps, RunContext, _GraphState, tool_specs

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_NAME = "agent-loop"

# Graph supersteps per iteration, used to size LangGraph's recursion limit.
_NODES_PER_ITERATION = 5

SUPERSEDED_SUSPENSION_ERROR = "Tool call suspended while another call in the same step was awaiting input"

MessagesInput = Union[str, MessageList, Iterable[Message]]


class AgentEngine:
    """Run the agent step loop with suspension, abort and persistence.

    The engine is orchestration only: model calls go through
    ``EngineDeps.invoker``, tool execution through ``EngineDeps.dispatcher``,
    completion checks through the configured scorers, and every state change
    that must survive a restart through ``EngineDeps.snapshots``.
    """

    def __init__(self, *, deps: EngineDeps) -> None:
        """
        Initialize the AgentEngine.

        Args:
            deps: The runtime dependencies (model invoker, snapshot repository,
                dispatcher, event bus, scorers, memory).
        """
        self._deps = deps
        self._contexts: Dict[str, RunContext] = {}
        self._graph = self._build_graph()

    @property
    def bus(self):
        return self._deps.bus

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        g: StateGraph = StateGraph(_GraphState)
        g.add_node("prepare", self._node_prepare)
        g.add_node("call_model", self._node_call_model)
        g.add_node("dispatch_tools", self._node_dispatch_tools)
        g.add_node("evaluate", self._node_evaluate)
        g.add_node("persist", self._node_persist)
        g.add_node("finish", self._node_finish)

        g.set_entry_point("prepare")
        g.add_conditional_edges("prepare", self._route_if_finished, {"finish": "finish", "continue": "call_model"})
        g.add_conditional_edges(
            "call_model", self._route_if_finished, {"finish": "finish", "continue": "dispatch_tools"}
        )
        g.add_edge("dispatch_tools", "evaluate")
        g.add_edge("evaluate", "persist")
        g.add_conditional_edges(
            "persist",
            self._route_after_persist,
            {"finish": "finish", "continue": "prepare"},
        )
        g.add_edge("finish", END)
        return g.compile()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        messages: MessagesInput,
        *,
        max_iterations: Optional[int] = None,
        run_id: Optional[str] = None,
        workflow_name: str = DEFAULT_WORKFLOW_NAME,
        resource_id: Optional[str] = None,
        request_context: Optional[Dict[str, Any]] = None,
        original_task: Optional[str] = None,
        permissions: Optional[PermissionState] = None,
    ) -> RunOutcome:
        """
        Start a new run and drive it until it finishes or suspends.

        Args:
            messages: Initial history; a plain string becomes one user message.
            max_iterations: Iteration budget; defaults to the loop configuration.
            run_id: Identifier for the run; generated when omitted.
            workflow_name: Workflow the run's snapshot is stored under.
            resource_id: Optional owner of the run.
            request_context: Caller context handed to scorers and persisted.
            original_task: The task scorers judge against; defaults to the
                first user message.
            permissions: Tool permission state; defaults to the standard rules.

        Returns:
            The run's outcome. ``status`` is ``suspended`` when a tool asked for
            input; resume it with ``resume``.

        Raises:
            ConfigurationError: If ``max_iterations`` is below 1 or no history
                was given.
            RunAlreadyExistsError: If a snapshot already exists for ``run_id``
                in ``workflow_name``; the stored run is left untouched.
        """
        history = MessageList([user_message(messages)]) if isinstance(messages, str) else MessageList(messages)
        if not len(history):
            raise ConfigurationError("A run needs at least one initial message")
        budget = max_iterations if max_iterations is not None else self._deps.loop.max_iterations
        if budget < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {budget}")

        run_id = run_id or str(uuid4())
        ctx = RunContext(
            run_id=run_id,
            workflow_name=workflow_name,
            messages=history,
            permissions=permissions or PermissionState(),
            max_iterations=budget,
            original_task=original_task if original_task is not None else history.first_user_text(),
            resource_id=resource_id,
            request_context=dict(request_context or {}),
        )

        snapshot = WorkflowRunState.empty(run_id).model_copy(
            update={
                "status": RunStatus.running.value,
                "value": ctx.value(),
                "request_context": dict(ctx.request_context),
            }
        )
        await self._deps.snapshots.create_workflow_snapshot(
            workflow_name=workflow_name, run_id=run_id, snapshot=snapshot, resource_id=resource_id
        )
        logger.info(f"Starting run {run_id} (workflow={workflow_name}, max_iterations={budget})")
        self._deps.bus.emit(RunStarted(run_id=run_id, workflow_name=workflow_name, max_iterations=budget))
        return await self._execute(ctx)

    async def resume(self, run_id: str, resume_data: Any = None, *, workflow_name: Optional[str] = None) -> RunOutcome:
        """
        Continue a suspended run.

        ``resume_data`` becomes the result of the tool call that suspended the
        run (for ``ask_user``: the user's answer). It is also recorded as the
        suspended step's ``resumePayload``; the step's model output is kept.

        The run is claimed by moving its stored status from ``suspended`` to
        ``running`` under the snapshot's row lock, so when several callers
        (in this process or others) resume the same run only one proceeds.

        Raises:
            RunNotFoundError: If no snapshot exists for ``run_id``.
            InvalidRunStateError: If the run is not suspended, or another
                caller claimed it first.
        """
        row = await self._load_run(run_id, workflow_name)
        if row.snapshot.status != RunStatus.suspended.value:
            raise InvalidRunStateError(run_id, row.snapshot.status, RunStatus.suspended.value)

        snapshots = self._deps.snapshots
        snapshot = await snapshots.update_workflow_state(
            workflow_name=row.workflow_name,
            run_id=run_id,
            opts={"status": RunStatus.running.value},
            expected_status=RunStatus.suspended.value,
        )
        if snapshot is None:
            raise RunNotFoundError(run_id)

        ctx = RunContext.from_value(
            run_id=run_id,
            workflow_name=row.workflow_name,
            value=snapshot.value,
            resource_id=row.resource_id,
            request_context=snapshot.request_context,
        )

        step_id, suspended = next(iter(snapshot.suspended_paths.items()), (None, {}))
        if step_id is not None:
            ctx.messages.add_tool_results(
                [
                    ToolCall(
                        id=str(suspended.get("toolCallId")),
                        name=str(suspended.get("toolName")),
                        result=resume_data,
                    )
                ]
            )
            step = dict(snapshot.context.get(step_id) or {})
            step.update({"status": StepStatus.success.value, "resumePayload": resume_data, "endedAt": _now_ms()})
            await snapshots.update_workflow_results(
                workflow_name=ctx.workflow_name, run_id=run_id, step_id=step_id, result=step
            )
        await snapshots.update_workflow_state(
            workflow_name=ctx.workflow_name,
            run_id=run_id,
            opts={"suspendedPaths": {}, "value": ctx.value()},
        )

        if self._deps.memory is not None:
            self._deps.memory.restore(run_id, snapshot, workflow_name=ctx.workflow_name)

        logger.info(f"Resuming run {run_id} at iteration {ctx.iteration} (step={step_id})")
        self._deps.bus.emit(RunResumed(run_id=run_id, step_id=step_id))
        return await self._execute(ctx)

    async def abort(self, run_id: str, reason: Optional[str] = None) -> bool:
        """
        Abort a run.

        An active run observes the abort at its next check; pending approvals
        are declined immediately. A suspended run is marked aborted in place.

        Returns:
            True if the run was aborted, False if it had already finished or
            was resumed by another caller first.

        Raises:
            RunNotFoundError: If the run is neither active nor persisted.
        """
        reason = reason or "aborted"
        ctx = self._contexts.get(run_id)
        if ctx is not None:
            logger.info(f"Aborting run {run_id}: {reason}")
            ctx.abort.abort(reason)
            self._deps.dispatcher.approvals.decline_all(run_id)
            if self._deps.memory is not None:
                await self._deps.memory.cancel(run_id)
            return True

        row = await self._load_run(run_id, None)
        if row.snapshot.status != RunStatus.suspended.value:
            return False
        try:
            await self._deps.snapshots.update_workflow_state(
                workflow_name=row.workflow_name,
                run_id=run_id,
                opts={"status": RunStatus.aborted.value, "suspendedPaths": {}, "error": {"message": reason}},
                expected_status=RunStatus.suspended.value,
            )
        except InvalidRunStateError:
            logger.info(f"Run {run_id} left the suspended state before it could be aborted")
            return False
        self._deps.bus.emit(RunAborted(run_id=run_id, reason=reason))
        log_run_finished(run_id, RunStatus.aborted.value, FinishReason.aborted.value, 0, reason)
        return True

    def respond_to_approval(
        self, tool_call_id: str, decision: Union[ApprovalDecision, str], *, run_id: Optional[str] = None
    ) -> bool:
        """Resolve a pending ``ask`` approval. Returns False if nothing was waiting.

        Pass ``run_id`` when concurrent runs may share tool call ids.
        """
        return self._deps.dispatcher.approvals.respond(tool_call_id, decision, run_id=run_id)

    async def get_run(self, run_id: str, workflow_name: Optional[str] = None) -> Optional[WorkflowRun]:
        return await self._deps.snapshots.get_workflow_run_by_id(run_id=run_id, workflow_name=workflow_name)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._contexts

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _load_run(self, run_id: str, workflow_name: Optional[str]) -> WorkflowRun:
        row = await self._deps.snapshots.get_workflow_run_by_id(run_id=run_id, workflow_name=workflow_name)
        if row is None:
            raise RunNotFoundError(run_id)
        return row

    async def _execute(self, ctx: RunContext) -> RunOutcome:
        self._contexts[ctx.run_id] = ctx
        remaining = max(ctx.max_iterations - ctx.iteration, 0)
        limit = (remaining + 1) * _NODES_PER_ITERATION + 10
        try:
            await self._graph.ainvoke({"run_id": ctx.run_id}, config={"recursion_limit": limit})
        finally:
            self._contexts.pop(ctx.run_id, None)

        return RunOutcome(
            run_id=ctx.run_id,
            workflow_name=ctx.workflow_name,
            status=ctx.status,
            finish_reason=ctx.finish_reason or FinishReason.complete,
            reason=ctx.reason,
            output=ctx.messages.last_assistant_text() or None,
            iterations=ctx.iteration,
            suspended=ctx.suspended,
            completion=ctx.completion,
        )

    def _ctx(self, state: _GraphState) -> RunContext:
        return self._contexts[str(state["run_id"])]

    def _check_abort(self, ctx: RunContext) -> bool:
        if ctx.abort.aborted:
            ctx.finish(RunStatus.aborted, FinishReason.aborted, ctx.abort.reason or "aborted")
            return True
        return False

    async def _node_prepare(self, state: _GraphState) -> _GraphState:
        """Start the next iteration unless the run is aborted or out of budget."""
        ctx = self._ctx(state)
        if self._check_abort(ctx):
            state["_finished"] = True
            return state
        if ctx.iteration >= ctx.max_iterations:
            ctx.finish(
                RunStatus.completed,
                FinishReason.max_iterations,
                f"Reached the maximum of {ctx.max_iterations} iterations",
            )
            state["_finished"] = True
            return state

        ctx.iteration += 1
        ctx.response = None
        ctx.tool_results = []
        ctx.suspended = None
        ctx.step_started_at = _now_ms()
        state["_next"] = "continue"
        self._deps.bus.emit(IterationStart(run_id=ctx.run_id, iteration=ctx.iteration))
        return state

    async def _node_call_model(self, state: _GraphState) -> _GraphState:
        """Invoke the model on the assembled prompt and record its answer."""
        ctx = self._ctx(state)
        ctx.tools = create_dynamic_tools(ctx.permissions, self._deps.extra_tools, builtins=self._deps.builtins)

        history = ctx.messages.snapshot()
        memory = self._deps.memory
        prompt = memory.context_messages(ctx.run_id, history) if memory is not None else list(history)
        request = ModelRequest(
            messages=prompt,
            tools=tool_specs(ctx.tools.values()),
            system_prompt=self._deps.system_prompt,
        )

        try:
            response = await self._deps.invoker.invoke(request, run_id=ctx.run_id)
        except ModelInvocationError as e:
            logger.error(f"Run {ctx.run_id} failed at iteration {ctx.iteration}: {e}")
            ctx.error_kind = e.kind
            ctx.finish(RunStatus.failed, FinishReason.failed, str(e))
            state["_finished"] = True
            return state

        ctx.response = response
        ctx.messages.add_assistant(response.text, thinking=response.thinking, tool_calls=response.tool_calls)
        if self._check_abort(ctx):
            state["_finished"] = True
        return state

    async def _node_dispatch_tools(self, state: _GraphState) -> _GraphState:
        """Execute the model's tool calls and fold their results into the history."""
        ctx = self._ctx(state)
        calls = ctx.pending_calls
        if not calls:
            return state

        results = await self._deps.dispatcher.execute(
            calls,
            ctx.tools,
            ctx.permissions,
            self._deps.loop.tool_concurrency,
            run_id=ctx.run_id,
            abort=ctx.abort,
        )

        settled: List[ToolCall] = []
        for call in results:
            if not call.suspended:
                settled.append(call)
            elif ctx.suspended is None:
                ctx.suspended = SuspendedMarker(
                    run_id=ctx.run_id,
                    step_id=ctx.step_id,
                    tool_call_id=call.id,
                    tool_name=call.name,
                    payload=dict(call.suspend_payload or {}),
                )
            else:
                superseded = {"result": {"error": SUPERSEDED_SUSPENSION_ERROR}, "is_error": True}
                settled.append(call.model_copy(update=superseded))
        ctx.tool_results = results
        ctx.messages.add_tool_results(settled)
        return state

    async def _node_evaluate(self, state: _GraphState) -> _GraphState:
        """Decide whether the run continues, suspends or is complete."""
        ctx = self._ctx(state)
        state["_next"] = "continue"

        if ctx.suspended is not None:
            ctx.finish(RunStatus.suspended, FinishReason.suspended, f"Waiting for input to '{ctx.suspended.tool_name}'")
            state["_next"] = "finish"
            return state
        if self._check_abort(ctx):
            state["_next"] = "finish"
            return state
        if ctx.pending_calls:
            return state

        if not self._deps.scorers:
            ctx.finish(RunStatus.completed, FinishReason.complete)
            state["_next"] = "finish"
            return state

        response_text = ctx.response.text if ctx.response is not None else ""
        completion = await run_completion_scorers(
            self._deps.scorers,
            CompletionContext(
                run_id=ctx.run_id,
                iteration=ctx.iteration,
                max_iterations=ctx.max_iterations,
                original_task=ctx.original_task,
                primitive_result=response_text,
                primitive_prompt=ctx.original_task,
                selected_primitive={"id": ctx.workflow_name, "type": "agent"},
                network_name=ctx.workflow_name,
                messages=ctx.messages.dump(),
                request_context=ctx.request_context,
            ),
            strategy=self._deps.scoring.strategy,
            parallel=self._deps.scoring.parallel,
            timeout=self._deps.scoring.timeout,
        )
        ctx.completion = completion
        self._deps.bus.emit(ScorersResult(run_id=ctx.run_id, iteration=ctx.iteration, result=completion))

        if completion.complete:
            ctx.finish(RunStatus.completed, FinishReason.complete, completion.completion_reason)
            state["_next"] = "finish"
            return state

        logger.debug(f"Run {ctx.run_id} not complete after iteration {ctx.iteration}; continuing with feedback")
        ctx.messages.add_user_text(
            format_completion_feedback(completion, max_iterations_reached=ctx.iteration >= ctx.max_iterations)
        )
        return state

    async def _node_persist(self, state: _GraphState) -> _GraphState:
        """Merge the iteration's step result and resumable state into the snapshot."""
        ctx = self._ctx(state)
        snapshots = self._deps.snapshots
        response = ctx.response
        suspended = ctx.suspended

        step = StepResult(
            status=StepStatus.suspended if suspended is not None else StepStatus.success,
            output={
                "text": response.text if response is not None else "",
                "modelId": response.model_id if response is not None else None,
                "toolCalls": [c.model_dump(mode="json") for c in ctx.tool_results],
            },
            suspend_payload=dict(suspended.payload) if suspended is not None else None,
            started_at=ctx.step_started_at,
            ended_at=_now_ms(),
        )
        opts: Dict[str, Any] = {
            "status": (RunStatus.suspended if suspended is not None else RunStatus.running).value,
            "value": ctx.value(),
        }
        if suspended is not None:
            opts["suspendedPaths"] = {
                ctx.step_id: {
                    "toolCallId": suspended.tool_call_id,
                    "toolName": suspended.tool_name,
                    "payload": suspended.payload,
                }
            }

        try:
            await snapshots.update_workflow_results(
                workflow_name=ctx.workflow_name,
                run_id=ctx.run_id,
                step_id=ctx.step_id,
                result=step,
                request_context=ctx.request_context,
            )
            await snapshots.update_workflow_state(workflow_name=ctx.workflow_name, run_id=ctx.run_id, opts=opts)
        except SnapshotPersistenceError as e:
            logger.error(f"Run {ctx.run_id} could not persist {ctx.step_id}: {e}")
            ctx.finish(RunStatus.failed, FinishReason.failed, str(e))
            state["_next"] = "finish"
        else:
            self._deps.bus.emit(SnapshotPersisted(run_id=ctx.run_id, step_id=ctx.step_id, status=step.status.value))

        if self._deps.memory is not None and ctx.status is RunStatus.running:
            self._deps.memory.notify(ctx.run_id, ctx.messages.snapshot(), workflow_name=ctx.workflow_name)
        self._deps.bus.emit(
            IterationEnd(run_id=ctx.run_id, iteration=ctx.iteration, tool_calls=len(ctx.tool_results))
        )
        return state

    async def _node_finish(self, state: _GraphState) -> _GraphState:
        """Finish node.

        Writes the terminal status (suspension was already written by
        ``persist``) and emits the run's closing event.
        """
        ctx = self._ctx(state)
        state["_finished"] = True
        bus = self._deps.bus
        memory = self._deps.memory

        if ctx.status is RunStatus.suspended and ctx.suspended is not None:
            logger.info(f"Run {ctx.run_id} suspended at {ctx.suspended.step_id} ({ctx.suspended.tool_name})")
            bus.emit(
                RunSuspended(
                    run_id=ctx.run_id,
                    step_id=ctx.suspended.step_id,
                    tool_call_id=ctx.suspended.tool_call_id,
                    payload=ctx.suspended.payload,
                )
            )
            return state

        finish_reason = ctx.finish_reason or FinishReason.complete
        opts: Dict[str, Any] = {"status": ctx.status.value}
        if ctx.status is RunStatus.completed:
            opts["result"] = {
                "output": ctx.messages.last_assistant_text(),
                "finishReason": finish_reason.value,
                "iterations": ctx.iteration,
            }
        else:
            opts["error"] = {"message": ctx.reason, "kind": ctx.error_kind}

        try:
            await self._deps.snapshots.update_workflow_state(
                workflow_name=ctx.workflow_name, run_id=ctx.run_id, opts=opts
            )
        except SnapshotPersistenceError as e:
            logger.error(f"Run {ctx.run_id} could not record terminal status {ctx.status.value}: {e}")

        if memory is not None:
            if ctx.status is RunStatus.aborted:
                await memory.cancel(ctx.run_id)
            memory.release(ctx.run_id)

        if ctx.status is RunStatus.completed:
            bus.emit(
                RunCompleted(
                    run_id=ctx.run_id,
                    finish_reason=finish_reason.value,
                    iterations=ctx.iteration,
                    output=ctx.messages.last_assistant_text() or None,
                )
            )
        elif ctx.status is RunStatus.aborted:
            bus.emit(RunAborted(run_id=ctx.run_id, reason=ctx.reason))
        else:
            bus.emit(RunFailed(run_id=ctx.run_id, reason=ctx.reason or "failed", error_kind=ctx.error_kind))

        logger.info(
            f"Run {ctx.run_id} finished: status={ctx.status.value} reason={finish_reason.value} iterations={ctx.iteration}"
        )
        log_run_finished(ctx.run_id, ctx.status.value, finish_reason.value, ctx.iteration, ctx.reason)
        return state

    def _route_if_finished(self, state: _GraphState) -> str:
        if state.get("_finished"):
            return "finish"
        return "continue"

    def _route_after_persist(self, state: _GraphState) -> str:
        if state.get("_next") == "finish":
            return "finish"
        return "continue"
