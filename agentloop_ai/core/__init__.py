"""
Core utilities and configuration for AgentLoop-AI.

This package provides core functionality including settings, logging
configuration, monitoring and the shared error taxonomy.
"""

from agentloop_ai.core.errors import AgentLoopError, ErrorCategory
from agentloop_ai.core.logging_config import get_logger, setup_logging

__all__ = ["AgentLoopError", "ErrorCategory", "get_logger", "setup_logging"]
