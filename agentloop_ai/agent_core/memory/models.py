from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import ObservationCycle, OMOperationType
from .tokens import estimate_tokens


class ObservationalMemoryConfig(BaseSchema):
    """
    Thresholds for the observational-memory pipeline.

    - ``message_tokens``: unobserved raw tokens that trigger observation.
    - ``observation_tokens``: accumulated observation tokens that trigger reflection.
    - ``buffer_tokens``: raw tokens pre-observed in the background per buffered
      chunk; defaults to a fifth of ``message_tokens``, 0 disables buffering.
    - ``reflection_buffer_activation``: fraction of ``observation_tokens`` at
      which reflection is pre-computed in the background; 0 disables it.
    """

    message_tokens: int = Field(default=30_000, ge=1)
    observation_tokens: int = Field(default=40_000, ge=1)
    buffer_tokens: Optional[int] = Field(default=None, ge=0)
    reflection_buffer_activation: float = Field(default=0.5, ge=0, lt=1)

    @property
    def effective_buffer_tokens(self) -> int:
        if self.buffer_tokens is None:
            return max(1, self.message_tokens // 5)
        return self.buffer_tokens


class ObserverResult(BaseSchema):
    observations: str = Field(description="Dense, dated bullet observations of what happened.")
    current_task: Optional[str] = Field(default=None, description="What the user is currently working on.")
    suggested_response: Optional[str] = Field(default=None, description="How the assistant should continue.")


class ReflectorResult(BaseSchema):
    observations: str = Field(description="The compressed observations replacing the input.")


@dataclass
class BufferedChunk:
    """Observations pre-computed for ``messages[start:end]`` awaiting activation."""

    cycle: ObservationCycle
    start: int
    end: int
    result: ObserverResult


@dataclass
class BufferedReflection:
    """A compressed version of the first ``covers`` observation entries."""

    cycle: ObservationCycle
    covers: int
    observations: str


@dataclass
class OMRecord:
    """Per-run observational-memory state. Written only by the run's worker."""

    run_id: str
    observations: List[str] = field(default_factory=list)
    observed_cursor: int = 0
    buffer_cursor: int = 0
    chunks: List[BufferedChunk] = field(default_factory=list)
    reflection: Optional[BufferedReflection] = None
    current_task: Optional[str] = None
    suggested_response: Optional[str] = None
    generation_count: int = 0
    retry_tokens: Dict[OMOperationType, int] = field(default_factory=dict)
    active_cycle: Optional[ObservationCycle] = None

    @property
    def observation_tokens(self) -> int:
        return sum(estimate_tokens(o) for o in self.observations)

    @property
    def buffered_tokens(self) -> int:
        return sum(c.cycle.tokens_involved for c in self.chunks)

    def dump(self) -> Dict[str, Any]:
        return {
            "observations": list(self.observations),
            "observedCursor": self.observed_cursor,
            "currentTask": self.current_task,
            "suggestedResponse": self.suggested_response,
            "generationCount": self.generation_count,
        }

    @classmethod
    def load(cls, run_id: str, raw: Dict[str, Any]) -> "OMRecord":
        cursor = int(raw.get("observedCursor", 0))
        # Buffered chunks are not persisted; re-buffer from the observed cursor.
        return cls(
            run_id=run_id,
            observations=list(raw.get("observations") or []),
            observed_cursor=cursor,
            buffer_cursor=cursor,
            current_task=raw.get("currentTask"),
            suggested_response=raw.get("suggestedResponse"),
            generation_count=int(raw.get("generationCount", 0)),
        )
