"""Model interface, failure classification and candidate fallback.

The loop talks to models only through ``ModelClient``: a request (messages plus
the tool specs on offer) goes in, a final ``ModelResponse`` comes out, or a
stream of ``ModelChunk`` values when the client implements ``stream``.
Provider HTTP clients live outside this package.

``ModelInvoker`` adds the failure semantics the loop relies on:

- Every failure is classified into a ``ModelErrorKind``.
- Transient kinds (``rate_limit``, ``network``) are retried on the same model
  with exponential backoff, up to ``max_retries`` times.
- Any other failure, or exhausted retries, moves on to the next candidate.
- When every candidate failed, ``ModelInvocationError`` carries the last
  failure's kind.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import Field
from pydantic_ai.exceptions import ModelHTTPError

from ..core.errors import ModelInvocationError
from .events import EventBus, MessageUpdate, ModelFallback, ModelRetry
from .messages import Message
from .schemas.base import BaseSchema
from .schemas.domain import TRANSIENT_MODEL_ERRORS, ModelErrorKind, ToolCallRequest

logger = logging.getLogger(__name__)


class ToolSpec(BaseSchema):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ModelRequest(BaseSchema):
    messages: List[Message] = Field(default_factory=list)
    tools: List[ToolSpec] = Field(default_factory=list)
    system_prompt: Optional[str] = None


class ModelUsage(BaseSchema):
    input_tokens: int = 0
    output_tokens: int = 0


class ModelResponse(BaseSchema):
    text: str = ""
    thinking: Optional[str] = None
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: Optional[ModelUsage] = None
    model_id: Optional[str] = None


class ModelChunk(BaseSchema):
    text_delta: str = ""
    thinking_delta: str = ""
    tool_call: Optional[ToolCallRequest] = None
    usage: Optional[ModelUsage] = None


class ModelClient(Protocol):
    """A single candidate model. ``stream`` is optional."""

    model_id: str

    async def generate(self, request: ModelRequest) -> ModelResponse: ...


_CONTEXT_HINTS = ("context length", "context window", "maximum context", "too many tokens", "prompt is too long")
_RATE_HINTS = ("rate limit", "rate_limit", "too many requests", "overloaded")
_AUTH_HINTS = ("api key", "unauthorized", "authentication", "permission denied", "forbidden")
_NOT_FOUND_HINTS = ("model not found", "does not exist", "unknown model", "no such model")
_NETWORK_HINTS = ("connection", "timed out", "timeout", "econnreset", "network")


def _from_status(status: Optional[int], message: str) -> Optional[ModelErrorKind]:
    if status is None:
        return None
    if status in (401, 403):
        return ModelErrorKind.auth
    if status == 404:
        return ModelErrorKind.model_not_found
    if status == 413:
        return ModelErrorKind.context_length
    if status == 429:
        return ModelErrorKind.rate_limit
    if status == 400 and any(h in message for h in _CONTEXT_HINTS):
        return ModelErrorKind.context_length
    if status >= 500:
        return ModelErrorKind.network
    return None


def classify_model_error(exc: BaseException) -> ModelErrorKind:
    """Map a model failure onto a ``ModelErrorKind``."""
    if isinstance(exc, ModelInvocationError):
        return ModelErrorKind(exc.kind)
    message = str(exc).lower()
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ModelErrorKind.network

    status: Optional[int] = None
    if isinstance(exc, ModelHTTPError):
        status = exc.status_code
        message = f"{message} {str(exc.body or '').lower()}"
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    else:
        raw = getattr(exc, "status_code", None)
        status = raw if isinstance(raw, int) else None

    kind = _from_status(status, message)
    if kind is not None:
        return kind
    for hints, hinted in (
        (_CONTEXT_HINTS, ModelErrorKind.context_length),
        (_RATE_HINTS, ModelErrorKind.rate_limit),
        (_AUTH_HINTS, ModelErrorKind.auth),
        (_NOT_FOUND_HINTS, ModelErrorKind.model_not_found),
        (_NETWORK_HINTS, ModelErrorKind.network),
    ):
        if any(h in message for h in hints):
            return hinted
    return ModelErrorKind.unknown


@dataclass
class ModelInvoker:
    """Try candidate models in priority order; first success wins."""

    candidates: Sequence[ModelClient]
    max_retries: int = 3
    retry_backoff: float = 1.0
    max_backoff: float = 30.0
    bus: Optional[EventBus] = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if not self.candidates:
            raise ValueError("at least one candidate model is required")

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_backoff * (2**attempt), self.max_backoff)

    def _emit(self, event: Any) -> None:
        if self.bus is not None:
            self.bus.emit(event)

    async def invoke(self, request: ModelRequest, *, run_id: Optional[str] = None) -> ModelResponse:
        last_error: Optional[BaseException] = None
        last_kind = ModelErrorKind.unknown
        last_model: Optional[str] = None

        for index, client in enumerate(self.candidates):
            attempt = 0
            while True:
                try:
                    response = await self._call(client, request, run_id)
                except Exception as e:
                    last_error, last_kind, last_model = e, classify_model_error(e), client.model_id
                    if last_kind in TRANSIENT_MODEL_ERRORS and attempt < self.max_retries:
                        delay = self._backoff(attempt)
                        attempt += 1
                        logger.warning(
                            f"Model {client.model_id} failed ({last_kind.value}); retry {attempt}/{self.max_retries} in {delay:.2f}s"
                        )
                        self._emit(
                            ModelRetry(
                                run_id=run_id,
                                model_id=client.model_id,
                                attempt=attempt,
                                delay=delay,
                                error_kind=last_kind.value,
                            )
                        )
                        await self.sleep(delay)
                        continue
                    break
                if response.model_id is None:
                    response = response.model_copy(update={"model_id": client.model_id})
                return response

            next_model = self.candidates[index + 1].model_id if index + 1 < len(self.candidates) else None
            logger.warning(f"Model {client.model_id} failed ({last_kind.value}): {last_error}")
            self._emit(
                ModelFallback(run_id=run_id, from_model=client.model_id, to_model=next_model, error_kind=last_kind.value)
            )

        raise ModelInvocationError(last_kind.value, str(last_error), model_id=last_model) from last_error

    async def _call(self, client: ModelClient, request: ModelRequest, run_id: Optional[str]) -> ModelResponse:
        stream = getattr(client, "stream", None)
        if stream is None:
            return await client.generate(request)

        text: List[str] = []
        thinking: List[str] = []
        tool_calls: List[ToolCallRequest] = []
        usage: Optional[Any] = None
        async for chunk in stream(request):
            if chunk.text_delta or chunk.thinking_delta:
                text.append(chunk.text_delta)
                thinking.append(chunk.thinking_delta)
                self._emit(MessageUpdate(run_id=run_id, text_delta=chunk.text_delta, thinking_delta=chunk.thinking_delta))
            if chunk.tool_call is not None:
                tool_calls.append(chunk.tool_call)
            if chunk.usage is not None:
                usage = chunk.usage
        return ModelResponse(
            text="".join(text),
            thinking="".join(thinking) or None,
            tool_calls=tool_calls,
            usage=usage,
            model_id=client.model_id,
        )
