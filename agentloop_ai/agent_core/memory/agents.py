"""Observer and reflector agents.

The pipeline depends only on the ``Observer``/``Reflector`` protocols. The
default implementations run a pydantic-ai ``Agent`` with a structured output
type, so any model pydantic-ai supports (or its ``TestModel``) can back them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from pydantic_ai import Agent as PydanticAIAgent

from ..messages import Message
from .models import ObserverResult, ReflectorResult

logger = logging.getLogger(__name__)


OBSERVER_INSTRUCTIONS = """\
You maintain the long-term memory of an assistant working with a user.
Read the new conversation segment and write observations: short, dated bullet
points capturing decisions, facts learned, files touched, tool outcomes and
open questions. Do not repeat the existing observations. Also state the task
the user is currently working on and, if useful, how the assistant should
continue."""

REFLECTOR_INSTRUCTIONS = """\
You compress an assistant's long-term memory. Merge, deduplicate and condense
the observations below into fewer, denser bullet points. Keep every decision,
unresolved problem and user preference; drop details that no longer matter."""


class Observer(Protocol):
    async def observe(self, messages: Sequence[Message], *, existing_observations: str) -> ObserverResult: ...


class Reflector(Protocol):
    async def reflect(self, observations: str) -> ReflectorResult: ...


def render_segment(messages: Sequence[Message]) -> str:
    return "\n\n".join(m.render() for m in messages)


@dataclass(frozen=True)
class PydanticAIObserver:
    """Observer backed by a pydantic-ai agent with ``ObserverResult`` output."""

    model: Any
    instructions: str = OBSERVER_INSTRUCTIONS

    async def observe(self, messages: Sequence[Message], *, existing_observations: str) -> ObserverResult:
        agent = PydanticAIAgent(self.model, output_type=ObserverResult, system_prompt=self.instructions)
        prompt = (
            f"<existing_observations>\n{existing_observations or '(none)'}\n</existing_observations>\n\n"
            f"<conversation>\n{render_segment(messages)}\n</conversation>"
        )
        logger.debug(f"Observing {len(messages)} message(s)")
        res = await agent.run(prompt)
        return res.output


@dataclass(frozen=True)
class PydanticAIReflector:
    """Reflector backed by a pydantic-ai agent with ``ReflectorResult`` output."""

    model: Any
    instructions: str = REFLECTOR_INSTRUCTIONS

    async def reflect(self, observations: str) -> ReflectorResult:
        agent = PydanticAIAgent(self.model, output_type=ReflectorResult, system_prompt=self.instructions)
        res = await agent.run(f"<observations>\n{observations}\n</observations>")
        return res.output
