"""Cheap token estimates used for observational-memory thresholds."""

from __future__ import annotations

import math
from typing import Iterable

from ..messages import Message

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_tokens(m.render()) for m in messages)
