"""Completion scoring: scorer runner and feedback formatting."""

from .feedback import format_completion_feedback, format_stream_completion_feedback
from .runner import (
    PASS_THRESHOLD,
    CompletionContext,
    FunctionScorer,
    Scorer,
    ScorerRunInput,
    StreamCompletionContext,
    run_completion_scorers,
    run_stream_completion_scorers,
)

__all__ = [
    "format_completion_feedback",
    "format_stream_completion_feedback",
    "PASS_THRESHOLD",
    "CompletionContext",
    "FunctionScorer",
    "Scorer",
    "ScorerRunInput",
    "StreamCompletionContext",
    "run_completion_scorers",
    "run_stream_completion_scorers",
]
