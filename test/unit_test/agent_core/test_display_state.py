from __future__ import annotations

from agentloop_ai.agent_core.display_state import RunDisplayState, apply_event
from agentloop_ai.agent_core.events import (
    ApprovalRequired,
    ApprovalResolved,
    OMActivation,
    OMBufferingEnd,
    OMBufferingFailed,
    OMBufferingStart,
    OMObservationEnd,
    OMObservationStart,
    RunAborted,
    RunStarted,
    ToolEnd,
    ToolStart,
    ToolUpdate,
)
from agentloop_ai.agent_core.schemas.domain import OMOperationType

OBS = OMOperationType.observation


def test_tool_lifecycle() -> None:
    state = RunDisplayState()
    apply_event(state, RunStarted(run_id="r1", workflow_name="wf", max_iterations=2))
    apply_event(state, ToolStart(run_id="r1", tool_call_id="c1", tool_name="execute_command"))
    apply_event(state, ToolUpdate(run_id="r1", tool_call_id="c1", tool_name="execute_command", partial="50%"))

    assert state.status == "running"
    assert state.active_tools["c1"].partial == "50%"

    apply_event(state, ToolEnd(run_id="r1", tool_call_id="c1", tool_name="execute_command"))
    assert state.active_tools == {}


def test_approval_prompt_cleared_when_resolved() -> None:
    state = RunDisplayState()
    apply_event(state, ApprovalRequired(run_id="r1", tool_call_id="c1", tool_name="write_file", category="edit"))
    assert state.pending_approval["tool_name"] == "write_file"

    apply_event(state, ApprovalResolved(run_id="r1", tool_call_id="c1", decision="approve"))
    assert state.pending_approval is None


def test_abort_clears_prompt() -> None:
    state = RunDisplayState()
    apply_event(state, ApprovalRequired(run_id="r1", tool_call_id="c1", tool_name="write_file"))
    apply_event(state, RunAborted(run_id="r1", reason="user"))
    assert state.status == "aborted"
    assert state.pending_approval is None


def test_observation_progress() -> None:
    state = RunDisplayState()
    apply_event(state, OMObservationStart(run_id="r1", cycle_id="cy1", tokens_to_observe=900))
    assert state.om.status == "observing"

    apply_event(
        state,
        OMObservationEnd(
            run_id="r1", cycle_id="cy1", duration_ms=5, tokens_observed=900, observation_tokens=120, current_task="t"
        ),
    )
    assert state.om.status == "idle"
    assert state.om.observation_tokens == 120
    assert state.om.current_task == "t"


def test_buffering_failure_keeps_retry_tokens() -> None:
    state = RunDisplayState()
    apply_event(state, OMBufferingStart(run_id="r1", cycle_id="b1", operation_type=OBS, tokens_to_buffer=400))
    apply_event(state, OMBufferingFailed(run_id="r1", cycle_id="b1", operation_type=OBS, error="observer down"))

    assert state.om.buffering["observation"].status == "failed"
    assert state.om.retry_tokens["observation"] == 400

    apply_event(state, OMBufferingStart(run_id="r1", cycle_id="b2", operation_type=OBS, tokens_to_buffer=500))
    assert state.om.retry_tokens["observation"] == 400

    apply_event(
        state,
        OMBufferingEnd(
            run_id="r1", cycle_id="b2", operation_type=OBS, tokens_buffered=500, buffered_tokens=80
        ),
    )
    assert "observation" not in state.om.retry_tokens
    assert state.om.buffered_tokens["observation"] == 80


def test_activation_resets_buffer() -> None:
    state = RunDisplayState()
    apply_event(state, OMBufferingStart(run_id="r1", cycle_id="b1", operation_type=OBS, tokens_to_buffer=400))
    apply_event(
        state,
        OMActivation(
            run_id="r1",
            cycle_id="b1",
            operation_type=OBS,
            chunks_activated=1,
            tokens_activated=400,
            observation_tokens=90,
            messages_activated=4,
            generation_count=0,
        ),
    )
    assert state.om.buffering == {}
    assert state.om.buffered_tokens["observation"] == 0
    assert state.om.observation_tokens == 90
