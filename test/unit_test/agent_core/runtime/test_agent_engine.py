from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence

import pytest
from pydantic_ai.exceptions import ModelHTTPError

from agentloop_ai.agent_core.events import ApprovalRequired, EventBus, ScorersResult
from agentloop_ai.agent_core.factory import build_engine
from agentloop_ai.agent_core.memory import ObservationalMemory, ObservationalMemoryConfig, ObserverResult, ReflectorResult
from agentloop_ai.agent_core.messages import Message, ToolResultBlock
from agentloop_ai.agent_core.model_provider import ModelRequest, ModelResponse
from agentloop_ai.agent_core.policy import PermissionState
from agentloop_ai.agent_core.repos import InMemoryWorkflowSnapshotRepository
from agentloop_ai.agent_core.runtime import AgentEngine
from agentloop_ai.agent_core.runtime.engine import SUPERSEDED_SUSPENSION_ERROR
from agentloop_ai.agent_core.schemas.domain import FinishReason, PermissionPolicy, RunStatus, ToolCallRequest
from agentloop_ai.agent_core.scoring import FunctionScorer, ScorerRunInput
from agentloop_ai.agent_core.tools import ToolBackends
from agentloop_ai.core.config import Settings
from agentloop_ai.core.errors import ConfigurationError, InvalidRunStateError, RunAlreadyExistsError, RunNotFoundError

WF = "agent-loop"


class _ScriptedModel:
    model_id = "scripted"

    def __init__(self, responses: Sequence[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[ModelRequest] = []

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _call(name: str, call_id: str, **args: Any) -> ModelResponse:
    return ModelResponse(tool_calls=[ToolCallRequest(id=call_id, name=name, args=args)])


def _tool_results(messages: Sequence[Message]) -> List[ToolResultBlock]:
    return [b for m in messages if m.role == "tool" for b in m.content]


async def _read_file(path: str, offset: Any = None, limit: Any = None) -> str:
    return f"contents of {path}"


def _engine(
    model: _ScriptedModel,
    *,
    snapshots: Optional[InMemoryWorkflowSnapshotRepository] = None,
    **kwargs: Any,
) -> AgentEngine:
    return build_engine(
        models=[model],
        snapshots=snapshots or InMemoryWorkflowSnapshotRepository(),
        backends=ToolBackends(read_file=_read_file),
        settings=Settings(AGENTLOOP_MODEL_RETRY_BACKOFF=0),
        **kwargs,
    )


async def _wait_for_event(engine: AgentEngine, kind: type) -> Any:
    async def _poll() -> Any:
        while True:
            for event in engine.bus.history():
                if isinstance(event, kind):
                    return event
            await asyncio.sleep(0)

    return await asyncio.wait_for(_poll(), 2)


@pytest.mark.asyncio
async def test_final_answer_completes_run() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    engine = _engine(_ScriptedModel([ModelResponse(text="All done.")]), snapshots=repo)

    outcome = await engine.run("Say you are done", run_id="r1")

    assert outcome.status is RunStatus.completed
    assert outcome.finish_reason is FinishReason.complete
    assert outcome.output == "All done."
    assert outcome.iterations == 1
    assert not engine.is_active("r1")

    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.status == "completed"
    assert snapshot.result["output"] == "All done."
    assert snapshot.step_result("iteration-1").output["text"] == "All done."

    types = [e.type for e in engine.bus.history("r1")]
    assert types[0] == "run.started"
    assert types[-1] == "run.completed"
    assert types.index("iteration.start") < types.index("snapshot.persisted") < types.index("iteration.end")


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_to_the_model() -> None:
    model = _ScriptedModel([_call("view", "c1", path="README.md"), ModelResponse(text="It is a readme.")])
    engine = _engine(model)

    outcome = await engine.run("What is in README.md?")

    assert outcome.status is RunStatus.completed
    assert outcome.iterations == 2
    [result] = _tool_results(model.requests[1].messages)
    assert result.tool_call_id == "c1"
    assert result.result == {"path": "README.md", "content": "contents of README.md"}
    assert {t.name for t in model.requests[0].tools} == {"ask_user", "view", "write_file", "execute_command"}


@pytest.mark.asyncio
async def test_iteration_budget_finishes_run() -> None:
    model = _ScriptedModel([_call("view", "c1", path="a")])
    engine = _engine(model)

    outcome = await engine.run("loop forever", max_iterations=3)

    assert outcome.status is RunStatus.completed
    assert outcome.finish_reason is FinishReason.max_iterations
    assert outcome.iterations == 3
    assert len(model.requests) == 3


@pytest.mark.asyncio
async def test_invalid_run_arguments() -> None:
    engine = _engine(_ScriptedModel([ModelResponse(text="x")]))

    with pytest.raises(ConfigurationError):
        await engine.run([])
    with pytest.raises(ConfigurationError):
        await engine.run("hi", max_iterations=0)


@pytest.mark.asyncio
async def test_scorer_feedback_keeps_the_loop_going() -> None:
    verdicts = iter([0, 1])

    def judge(payload: ScorerRunInput) -> dict:
        score = next(verdicts)
        return {"score": score, "reason": "needs tests" if not score else "tests added"}

    model = _ScriptedModel([ModelResponse(text="draft"), ModelResponse(text="final")])
    engine = _engine(model, scorers=[FunctionScorer(id="tests", name="Tests", fn=judge)])

    outcome = await engine.run("Add tests", run_id="r1")

    assert outcome.status is RunStatus.completed
    assert outcome.output == "final"
    assert outcome.iterations == 2
    assert outcome.completion.complete is True
    feedback = model.requests[1].messages[-1]
    assert feedback.role == "user"
    assert feedback.text.startswith("#### Completion Check Results")
    assert "Reason: needs tests" in feedback.text
    assert [e.result.complete for e in engine.bus.history("r1") if isinstance(e, ScorersResult)] == [False, True]


@pytest.mark.asyncio
async def test_ask_user_suspends_and_resume_continues() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    first = _ScriptedModel([_call("ask_user", "c1", question="Which branch?")])
    engine = _engine(first, snapshots=repo)

    outcome = await engine.run("Deploy", run_id="r1", permissions=permissions)

    assert outcome.status is RunStatus.suspended
    assert outcome.suspended.tool_call_id == "c1"
    assert outcome.suspended.payload == {"question": "Which branch?"}
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.status == "suspended"
    assert snapshot.suspended_paths["iteration-1"]["toolCallId"] == "c1"

    # A fresh engine over the same store picks the run up.
    second = _ScriptedModel([ModelResponse(text="Deploying main.")])
    restarted = _engine(second, snapshots=repo)
    resumed = await restarted.resume("r1", "main")

    assert resumed.status is RunStatus.completed
    assert resumed.output == "Deploying main."
    assert resumed.iterations == 2
    [answer] = _tool_results(second.requests[0].messages)
    assert (answer.tool_call_id, answer.result) == ("c1", "main")
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.suspended_paths == {}
    step = snapshot.step_result("iteration-1")
    assert step.status == "success"
    assert step.resume_payload == "main"
    assert step.suspend_payload == {"question": "Which branch?"}
    assert [c["id"] for c in step.output["toolCalls"]] == ["c1"]


@pytest.mark.asyncio
async def test_second_suspension_in_a_step_is_superseded() -> None:
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    model = _ScriptedModel(
        [
            ModelResponse(
                tool_calls=[
                    ToolCallRequest(id="c1", name="ask_user", args={"question": "A?"}),
                    ToolCallRequest(id="c2", name="ask_user", args={"question": "B?"}),
                ]
            ),
            ModelResponse(text="ok"),
        ]
    )
    engine = _engine(model)

    outcome = await engine.run("two questions", run_id="r1", permissions=permissions)
    assert outcome.suspended.tool_call_id == "c1"

    await engine.resume("r1", "yes")
    results = {r.tool_call_id: r for r in _tool_results(model.requests[1].messages)}
    assert results["c1"].result == "yes"
    assert results["c2"].is_error is True
    assert results["c2"].result == {"error": SUPERSEDED_SUSPENSION_ERROR}


@pytest.mark.asyncio
async def test_resume_requires_suspended_run() -> None:
    engine = _engine(_ScriptedModel([ModelResponse(text="done")]))
    await engine.run("hi", run_id="r1")

    with pytest.raises(InvalidRunStateError):
        await engine.resume("r1", "x")
    with pytest.raises(RunNotFoundError):
        await engine.resume("missing", "x")



@pytest.mark.asyncio
async def test_run_refuses_an_existing_run_id() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    await _engine(_ScriptedModel([_call("ask_user", "c1", question="?")]), snapshots=repo).run(
        "ask", run_id="r1", permissions=permissions
    )
    before = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")

    other = _engine(_ScriptedModel([ModelResponse(text="done")]), snapshots=repo)
    with pytest.raises(RunAlreadyExistsError) as exc:
        await other.run("start over", run_id="r1")

    assert exc.value.run_id == "r1"
    after = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert after == before
    assert after.status == "suspended"


@pytest.mark.asyncio
async def test_run_id_is_only_reserved_per_workflow() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    engine = _engine(_ScriptedModel([ModelResponse(text="done")]), snapshots=repo)
    await engine.run("hi", run_id="r1")

    outcome = await engine.run("hi", run_id="r1", workflow_name="other-loop")
    assert outcome.status is RunStatus.completed


@pytest.mark.asyncio
async def test_concurrent_resumes_complete_the_run_once() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    await _engine(_ScriptedModel([_call("ask_user", "c1", question="?")]), snapshots=repo).run(
        "ask", run_id="r1", permissions=permissions
    )
    models = [_ScriptedModel([ModelResponse(text="answer a")]), _ScriptedModel([ModelResponse(text="answer b")])]
    engines = [_engine(m, snapshots=repo) for m in models]

    results = await asyncio.gather(*(e.resume("r1", "main") for e in engines), return_exceptions=True)

    completed = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, InvalidRunStateError)]
    assert len(completed) == 1 and len(rejected) == 1
    assert completed[0].status is RunStatus.completed
    assert sum(len(m.requests) for m in models) == 1
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.status == "completed"


@pytest.mark.asyncio
async def test_resume_after_completion_is_rejected() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    engine = _engine(_ScriptedModel([_call("ask_user", "c1", question="?"), ModelResponse(text="ok")]), snapshots=repo)
    await engine.run("ask", run_id="r1", permissions=permissions)
    await engine.resume("r1", "yes")

    with pytest.raises(InvalidRunStateError) as exc:
        await engine.resume("r1", "yes again")
    assert exc.value.status == "completed"


@pytest.mark.asyncio
async def test_abort_while_waiting_for_approval() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    writes: List[str] = []

    async def write_file(path: str, content: str) -> None:
        writes.append(path)

    engine = build_engine(
        models=[_ScriptedModel([_call("write_file", "c1", path="a.txt", content="x")])],
        snapshots=repo,
        backends=ToolBackends(write_file=write_file),
    )

    task = asyncio.create_task(engine.run("write it", run_id="r1"))
    await _wait_for_event(engine, ApprovalRequired)
    assert engine.is_active("r1")

    assert await engine.abort("r1", "user cancelled") is True
    outcome = await asyncio.wait_for(task, 2)

    assert outcome.status is RunStatus.aborted
    assert outcome.finish_reason is FinishReason.aborted
    assert outcome.reason == "user cancelled"
    assert writes == []
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.status == "aborted"
    assert await engine.abort("r1") is False


@pytest.mark.asyncio
async def test_abort_suspended_run() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    permissions = PermissionState()
    permissions.set_tool_policy("ask_user", PermissionPolicy.allow)
    engine = _engine(_ScriptedModel([_call("ask_user", "c1", question="?")]), snapshots=repo)
    await engine.run("ask", run_id="r1", permissions=permissions)

    assert await engine.abort("r1") is True
    run = await engine.get_run("r1")
    assert run.status == "aborted"
    with pytest.raises(RunNotFoundError):
        await engine.abort("missing")


@pytest.mark.asyncio
async def test_approved_tool_runs() -> None:
    engine = build_engine(
        models=[_ScriptedModel([_call("execute_command", "c1", command="ls"), ModelResponse(text="listed")])],
        backends=ToolBackends(execute_command=_execute),
    )

    task = asyncio.create_task(engine.run("list files", run_id="r1"))
    pending = await _wait_for_event(engine, ApprovalRequired)
    assert engine.respond_to_approval(pending.tool_call_id, "approve") is True

    outcome = await asyncio.wait_for(task, 2)
    assert outcome.status is RunStatus.completed
    assert outcome.iterations == 2


async def _execute(command: str, timeout: Any = None, on_output: Any = None) -> dict:
    return {"stdout": "a.txt", "exit_code": 0}


@pytest.mark.asyncio
async def test_denied_tool_is_not_offered_or_run() -> None:
    writes: List[str] = []

    async def write_file(path: str, content: str) -> None:
        writes.append(path)

    permissions = PermissionState()
    permissions.set_tool_policy("write_file", PermissionPolicy.deny)
    model = _ScriptedModel([_call("write_file", "c1", path="a", content="x"), ModelResponse(text="gave up")])
    engine = build_engine(models=[model], backends=ToolBackends(write_file=write_file))

    outcome = await engine.run("write", permissions=permissions)

    assert outcome.status is RunStatus.completed
    assert "write_file" not in {t.name for t in model.requests[0].tools}
    [result] = _tool_results(model.requests[1].messages)
    assert result.is_error is True
    assert writes == []


@pytest.mark.asyncio
async def test_model_auth_error_fails_run_and_keeps_earlier_steps() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    model = _ScriptedModel([_call("view", "c1", path="a"), ModelHTTPError(401, "scripted")])
    engine = _engine(model, snapshots=repo)

    outcome = await engine.run("read a", run_id="r1")

    assert outcome.status is RunStatus.failed
    assert outcome.finish_reason is FinishReason.failed
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    assert snapshot.status == "failed"
    assert snapshot.error["kind"] == "auth"
    assert "iteration-1" in snapshot.context
    [failed] = [e for e in engine.bus.history("r1") if e.type == "run.failed"]
    assert failed.error_kind == "auth"


class _Observer:
    async def observe(self, messages: Sequence[Message], *, existing_observations: str) -> ObserverResult:
        return ObserverResult(observations=f"- saw {len(messages)} messages")


class _Reflector:
    async def reflect(self, observations: str) -> ReflectorResult:
        return ReflectorResult(observations=observations)


@pytest.mark.asyncio
async def test_history_is_observed_in_the_background() -> None:
    repo = InMemoryWorkflowSnapshotRepository()
    model = _ScriptedModel([_call("view", "c1", path="a"), ModelResponse(text="done")])
    bus = EventBus()
    memory = ObservationalMemory(
        observer=_Observer(),
        reflector=_Reflector(),
        config=ObservationalMemoryConfig(message_tokens=1, buffer_tokens=0),
        bus=bus,
        snapshots=repo,
    )
    engine = _engine(model, snapshots=repo, memory=memory, bus=bus)

    outcome = await engine.run("read a", run_id="r1")
    await memory.wait_idle("r1")

    assert outcome.status is RunStatus.completed
    snapshot = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
    stored = snapshot.step_result(ObservationalMemory.STEP_ID).output
    assert stored["observations"][0].startswith("- saw")
    assert any(e.type == "om.observation_end" for e in engine.bus.history("r1"))
