from __future__ import annotations

from agentloop_ai.agent_core.schemas.domain import CompletionRunResult, ScorerResult
from agentloop_ai.agent_core.scoring import format_completion_feedback, format_stream_completion_feedback


def _result(complete: bool, *, timed_out: bool = False) -> CompletionRunResult:
    return CompletionRunResult(
        complete=complete,
        scorers=[
            ScorerResult(score=1, passed=True, reason="tests pass", scorer_id="tests", scorer_name="Tests"),
            ScorerResult(score=0, passed=False, reason="no docs", scorer_id="docs", scorer_name="Docs"),
        ],
        total_duration=12.4,
        timed_out=timed_out,
    )


def test_incomplete_feedback_lists_each_scorer() -> None:
    text = format_completion_feedback(_result(False))

    assert text.startswith("#### Completion Check Results")
    assert "Overall: ❌ NOT COMPLETE" in text
    assert "Duration: 12ms" in text
    assert "###### Tests (tests)" in text
    assert "Score: 1 ✅" in text
    assert "Score: 0 ❌" in text
    assert "Reason: no docs" in text
    assert text.rstrip().endswith("🔄 Will continue working on the task.")


def test_max_iterations_and_timeout_notes() -> None:
    text = format_completion_feedback(_result(False, timed_out=True), max_iterations_reached=True)
    assert "⚠️ Scoring timed out" in text
    assert text.rstrip().endswith("⚠️ Max iterations reached")


def test_complete_feedback_has_no_continuation_note() -> None:
    text = format_completion_feedback(_result(True))
    assert "Overall: ✅ COMPLETE" in text
    assert "Will continue" not in text


def test_stream_feedback() -> None:
    incomplete = format_stream_completion_feedback(_result(False))
    complete = format_stream_completion_feedback(_result(True))

    assert "**Tests** (tests)" in incomplete
    assert incomplete.rstrip().endswith(
        "🔄 The task is not yet complete. Please continue working based on the feedback above."
    )
    assert complete.rstrip().endswith("✅ The task is complete.")
