"""Markdown feedback for completion check results.

The loop appends this feedback to the conversation when scorers report the task
is not complete, so the model sees why and keeps working.
"""

from __future__ import annotations

from typing import List

from ..schemas.domain import CompletionRunResult, ScorerResult


def _score(value: float) -> str:
    return f"{value:g}"


def _header(result: CompletionRunResult) -> List[str]:
    lines = [
        "#### Completion Check Results",
        "",
        f"Overall: {'✅ COMPLETE' if result.complete else '❌ NOT COMPLETE'}",
        f"Duration: {round(result.total_duration)}ms",
    ]
    if result.timed_out:
        lines.append("⚠️ Scoring timed out")
    lines.append("")
    return lines


def _scorer_lines(scorer: ScorerResult, title: str) -> List[str]:
    lines = [title, f"Score: {_score(scorer.score)} {'✅' if scorer.passed else '❌'}"]
    if scorer.reason:
        lines.append(f"Reason: {scorer.reason}")
    lines.append("")
    return lines


def format_completion_feedback(result: CompletionRunResult, max_iterations_reached: bool = False) -> str:
    lines = _header(result)
    for scorer in result.scorers:
        lines.extend(_scorer_lines(scorer, f"###### {scorer.scorer_name} ({scorer.scorer_id})"))
    if not result.complete:
        if max_iterations_reached:
            lines.append("⚠️ Max iterations reached")
        else:
            lines.append("🔄 Will continue working on the task.")
    return "\n".join(lines).rstrip() + "\n"


def format_stream_completion_feedback(result: CompletionRunResult, max_iterations_reached: bool = False) -> str:
    lines = _header(result)
    for scorer in result.scorers:
        lines.extend(_scorer_lines(scorer, f"**{scorer.scorer_name}** ({scorer.scorer_id})"))
    if result.complete:
        lines.append("✅ The task is complete.")
    elif max_iterations_reached:
        lines.append("⚠️ Max iterations reached")
    else:
        lines.append("🔄 The task is not yet complete. Please continue working based on the feedback above.")
    return "\n".join(lines).rstrip() + "\n"
