"""Append-only conversation history.

``MessageList`` is the single source of truth read by the step loop, the
completion scorers and the observational-memory pipeline. The loop owns it for
the run's duration and is its only writer; every other reader works from an
immutable ``snapshot()``.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Dict, Iterable, Iterator, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import Field, TypeAdapter

from .schemas.base import BaseSchema
from .schemas.domain import ToolCall, ToolCallRequest, _utc_now


class TextBlock(BaseSchema):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseSchema):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolCallBlock(BaseSchema):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseSchema):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str
    result: Any = None
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolCallBlock, ToolResultBlock],
    Field(discriminator="type"),
]

Role = Literal["system", "user", "assistant", "tool"]


class Message(BaseSchema):
    role: Role
    content: List[ContentBlock] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> List[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    def render(self) -> str:
        """Flatten the message into plain text (used for token estimates and prompts)."""
        parts: List[str] = []
        for block in self.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ThinkingBlock):
                parts.append(block.thinking)
            elif isinstance(block, ToolCallBlock):
                parts.append(f"[tool_call {block.name}] {json.dumps(block.args, default=str)}")
            else:
                parts.append(f"[tool_result {block.name}] {json.dumps(block.result, default=str)}")
        return f"{self.role}: " + "\n".join(parts)


_MESSAGES = TypeAdapter(List[Message])


def user_message(text: str) -> Message:
    return Message(role="user", content=[TextBlock(text=text)])


def system_message(text: str) -> Message:
    return Message(role="system", content=[TextBlock(text=text)])


def assistant_message(
    text: str = "", *, thinking: Optional[str] = None, tool_calls: Iterable[ToolCallRequest] = ()
) -> Message:
    blocks: List[Any] = []
    if thinking:
        blocks.append(ThinkingBlock(thinking=thinking))
    if text:
        blocks.append(TextBlock(text=text))
    for call in tool_calls:
        blocks.append(ToolCallBlock(id=call.id, name=call.name, args=call.args))
    return Message(role="assistant", content=blocks)


class MessageList:
    """Ordered, append-only sequence of role-tagged messages."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: List[Message] = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def add_user_text(self, text: str) -> Message:
        message = user_message(text)
        self.append(message)
        return message

    def add_assistant(
        self, text: str = "", *, thinking: Optional[str] = None, tool_calls: Iterable[ToolCallRequest] = ()
    ) -> Message:
        message = assistant_message(text, thinking=thinking, tool_calls=tool_calls)
        self.append(message)
        return message

    def add_tool_results(self, calls: Sequence[ToolCall]) -> Optional[Message]:
        if not calls:
            return None
        message = Message(
            role="tool",
            content=[
                ToolResultBlock(tool_call_id=c.id, name=c.name, result=c.result, is_error=c.is_error) for c in calls
            ],
        )
        self.append(message)
        return message

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def window(self, start: int) -> Tuple[Message, ...]:
        return tuple(self._messages[start:])

    def last_assistant_text(self) -> str:
        for message in reversed(self._messages):
            if message.role == "assistant" and message.text:
                return message.text
        return ""

    def first_user_text(self) -> str:
        for message in self._messages:
            if message.role == "user" and message.text:
                return message.text
        return ""

    def dump(self) -> List[Dict[str, Any]]:
        return _MESSAGES.dump_python(self._messages, mode="json")

    @classmethod
    def load(cls, raw: Iterable[Dict[str, Any]]) -> "MessageList":
        return cls(_MESSAGES.validate_python(list(raw)))
