"""Completion scorer runner.

Scorers decide whether the agent's task is done. ``run_completion_scorers``
runs a set of them against the current state and folds their verdicts with a
strategy:

- ``all``: complete iff every scorer passes (vacuously true for no scorers).
- ``any``: complete iff at least one scorer passes (false for no scorers).

Sequential runs short-circuit (``all`` stops at the first failure, ``any`` at the
first pass). A scorer that raises is recorded as failed and never aborts its
siblings. Exceeding the optional time budget marks the run ``timed_out`` and
forces ``complete=False``; every scorer cut off by the budget is
recorded as a failed "Scorer timed out" result.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import CompletionRunResult, CompletionStrategy, ScorerResult

logger = logging.getLogger(__name__)

# A scorer passes when its score is strictly greater than this.
PASS_THRESHOLD = 0.0


class ScorerRunInput(BaseSchema):
    """The payload every scorer's ``run`` receives."""

    run_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    request_context: Dict[str, Any] = Field(default_factory=dict)


class Scorer(Protocol):
    id: str
    name: str

    def run(self, payload: ScorerRunInput) -> Union[Any, Awaitable[Any]]: ...


@dataclass(frozen=True)
class FunctionScorer:
    """Adapt a (sync or async) callable returning ``{score, reason}`` into a ``Scorer``."""

    id: str
    fn: Callable[[ScorerRunInput], Any]
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.id)

    async def run(self, payload: ScorerRunInput) -> Any:
        result = self.fn(payload)
        if inspect.isawaitable(result):
            result = await result
        return result


class CompletionContext(BaseSchema):
    run_id: str
    iteration: int = 0
    max_iterations: Optional[int] = None
    original_task: str = ""
    primitive_result: str = ""
    primitive_prompt: Optional[str] = None
    selected_primitive: Dict[str, Any] = Field(default_factory=dict)
    network_name: Optional[str] = None
    messages: List[Any] = Field(default_factory=list)
    request_context: Dict[str, Any] = Field(default_factory=dict)

    def scorer_input(self) -> ScorerRunInput:
        return ScorerRunInput(
            run_id=self.run_id,
            input={
                "iteration": self.iteration,
                "maxIterations": self.max_iterations,
                "originalTask": self.original_task,
                "primitiveResult": self.primitive_result,
                "primitivePrompt": self.primitive_prompt,
                "selectedPrimitive": self.selected_primitive,
                "networkName": self.network_name,
                "messages": self.messages,
            },
            output=self.primitive_result,
            request_context=self.request_context,
        )


class StreamCompletionContext(BaseSchema):
    """A still-partial streaming state: the text and tool traffic seen so far."""

    run_id: str
    iteration: int = 0
    max_iterations: Optional[int] = None
    original_task: str = ""
    current_text: str = ""
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    tool_results: List[Dict[str, Any]] = Field(default_factory=list)
    messages: List[Any] = Field(default_factory=list)
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    request_context: Dict[str, Any] = Field(default_factory=dict)

    def to_completion_context(self) -> CompletionContext:
        return CompletionContext(
            run_id=self.run_id,
            iteration=self.iteration,
            max_iterations=self.max_iterations,
            original_task=self.original_task,
            primitive_result=self.current_text,
            selected_primitive={"id": "stream", "type": "agent"},
            network_name=self.agent_name or self.agent_id or "stream",
            messages=self.messages,
            request_context={
                **self.request_context,
                "toolCalls": self.tool_calls,
                "toolResults": self.tool_results,
                "agentId": self.agent_id,
                "agentName": self.agent_name,
            },
        )


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _read_outcome(value: Any) -> Tuple[float, Optional[str]]:
    if value is None:
        return 0.0, None
    if isinstance(value, dict):
        score, reason = value.get("score"), value.get("reason")
    else:
        score, reason = getattr(value, "score", None), getattr(value, "reason", None)
    return float(score or 0), (str(reason) if reason is not None else None)


async def _run_scorer(scorer: Scorer, payload: ScorerRunInput) -> ScorerResult:
    started = time.perf_counter()
    try:
        value = scorer.run(payload)
        if inspect.isawaitable(value):
            value = await value
        score, reason = _read_outcome(value)
    except Exception as e:
        logger.warning(f"Scorer {scorer.id} raised: {e}")
        return ScorerResult(
            score=0,
            passed=False,
            reason=f"Scorer threw an error: {e}",
            scorer_id=scorer.id,
            scorer_name=scorer.name,
            duration=_elapsed_ms(started),
        )
    return ScorerResult(
        score=score,
        passed=score > PASS_THRESHOLD,
        reason=reason,
        scorer_id=scorer.id,
        scorer_name=scorer.name,
        duration=_elapsed_ms(started),
    )


TIMED_OUT_REASON = "Scorer timed out"


def _timed_out(scorer: Scorer, started: float) -> ScorerResult:
    return ScorerResult(
        score=0,
        passed=False,
        reason=TIMED_OUT_REASON,
        scorer_id=scorer.id,
        scorer_name=scorer.name,
        duration=_elapsed_ms(started),
    )


def _should_stop(strategy: CompletionStrategy, result: ScorerResult) -> bool:
    if strategy is CompletionStrategy.all:
        return not result.passed
    return result.passed


async def _run_sequential(
    scorers: Sequence[Scorer], payload: ScorerRunInput, strategy: CompletionStrategy, timeout: Optional[float]
) -> Tuple[List[ScorerResult], bool]:
    results: List[ScorerResult] = []
    deadline = None if timeout is None else time.perf_counter() + timeout
    for scorer in scorers:
        remaining = None if deadline is None else deadline - time.perf_counter()
        if remaining is not None and remaining <= 0:
            return results, True
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(_run_scorer(scorer, payload), remaining)
        except asyncio.TimeoutError:
            logger.warning(f"Scoring timed out while running scorer {scorer.id}")
            results.append(_timed_out(scorer, started))
            return results, True
        results.append(result)
        if _should_stop(strategy, result):
            break
    return results, False


async def _run_parallel(
    scorers: Sequence[Scorer], payload: ScorerRunInput, timeout: Optional[float]
) -> Tuple[List[ScorerResult], bool]:
    if not scorers:
        return [], False
    started = time.perf_counter()
    tasks = [asyncio.create_task(_run_scorer(s, payload)) for s in scorers]
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning(f"Scoring timed out with {len(pending)} scorer(s) still running")
    # Results keep scorer order; cancelled scorers report a timeout.
    return [
        _timed_out(s, started) if t in pending else t.result() for s, t in zip(scorers, tasks)
    ], bool(pending)


def _completion_reason(complete: bool, results: Sequence[ScorerResult]) -> Optional[str]:
    for result in results:
        if result.passed == complete and result.reason:
            return result.reason
    return None


async def run_completion_scorers(
    scorers: Sequence[Scorer],
    context: CompletionContext,
    *,
    strategy: Union[CompletionStrategy, str] = CompletionStrategy.all,
    parallel: bool = False,
    timeout: Optional[float] = None,
) -> CompletionRunResult:
    """
    Run ``scorers`` against ``context`` and fold their verdicts.

    Args:
        scorers: Scorers to run, in order.
        context: The completion context handed to every scorer.
        strategy: ``all`` or ``any``.
        parallel: Run all scorers concurrently instead of in order.
        timeout: Time budget in seconds for the whole pass.

    Returns:
        The aggregated ``CompletionRunResult``.
    """
    strategy = CompletionStrategy(strategy)
    started = time.perf_counter()
    payload = context.scorer_input()

    if parallel:
        results, timed_out = await _run_parallel(scorers, payload, timeout)
    else:
        results, timed_out = await _run_sequential(scorers, payload, strategy, timeout)

    if strategy is CompletionStrategy.all:
        complete = all(r.passed for r in results)
    else:
        complete = any(r.passed for r in results)
    if timed_out:
        complete = False

    return CompletionRunResult(
        complete=complete,
        completion_reason=_completion_reason(complete, results),
        scorers=results,
        total_duration=_elapsed_ms(started),
        timed_out=timed_out,
    )


async def run_stream_completion_scorers(
    scorers: Sequence[Scorer],
    context: StreamCompletionContext,
    *,
    strategy: Union[CompletionStrategy, str] = CompletionStrategy.all,
    parallel: bool = False,
    timeout: Optional[float] = None,
) -> CompletionRunResult:
    """Streaming variant: adapts the partial stream state, then runs as usual."""
    return await run_completion_scorers(
        scorers, context.to_completion_context(), strategy=strategy, parallel=parallel, timeout=timeout
    )
