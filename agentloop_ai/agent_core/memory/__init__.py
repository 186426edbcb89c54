"""Observational memory: background observation and reflection over message history."""

from .agents import Observer, PydanticAIObserver, PydanticAIReflector, Reflector
from .models import ObservationalMemoryConfig, ObserverResult, OMRecord, ReflectorResult
from .pipeline import ObservationalMemory
from .tokens import estimate_message_tokens, estimate_tokens

__all__ = [
    "Observer",
    "PydanticAIObserver",
    "PydanticAIReflector",
    "Reflector",
    "ObservationalMemoryConfig",
    "ObserverResult",
    "OMRecord",
    "ReflectorResult",
    "ObservationalMemory",
    "estimate_message_tokens",
    "estimate_tokens",
]
