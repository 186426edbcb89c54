"""
Monitoring and Tracing Configuration Module.

This module wires Pydantic Logfire into the agent loop when it is enabled:

- Pydantic AI model calls (observer/reflector agents and any pydantic-ai backed
  model client)
- SQLAlchemy snapshot store operations
- HTTPX requests made by model providers

Monitoring is opt-in: set ``LOGFIRE_ENABLED=true`` and ``LOGFIRE_TOKEN``.
Call ``initialize_logfire()`` once at application startup.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

LOGFIRE_ENABLED = os.getenv("LOGFIRE_ENABLED", "false").lower() in ("true", "1", "yes")
LOGFIRE_TOKEN = os.getenv("LOGFIRE_TOKEN", "")
LOGFIRE_ENVIRONMENT = os.getenv("LOGFIRE_ENVIRONMENT", "development")
LOGFIRE_SERVICE_NAME = os.getenv("LOGFIRE_SERVICE_NAME", "agentloop-ai")
LOGFIRE_SERVICE_VERSION = os.getenv("LOGFIRE_SERVICE_VERSION", "0.1.0")

LOGFIRE_TRACE_PYDANTIC_AI = os.getenv("LOGFIRE_TRACE_PYDANTIC_AI", "true").lower() in ("true", "1", "yes")
LOGFIRE_TRACE_SQLALCHEMY = os.getenv("LOGFIRE_TRACE_SQLALCHEMY", "true").lower() in ("true", "1", "yes")
LOGFIRE_TRACE_HTTPX = os.getenv("LOGFIRE_TRACE_HTTPX", "true").lower() in ("true", "1", "yes")

_initialized = False


def initialize_logfire() -> bool:
    """
    Initialize Pydantic Logfire for monitoring and tracing.

    Returns:
        True when Logfire was configured, False when monitoring stays off.
    """
    global _initialized
    if _initialized:
        return True
    if not LOGFIRE_ENABLED:
        logger.info("Logfire monitoring is disabled. Set LOGFIRE_ENABLED=true to enable.")
        return False
    if not LOGFIRE_TOKEN:
        logger.warning("Logfire is enabled but LOGFIRE_TOKEN is not set; monitoring stays off.")
        return False

    import logfire

    logfire.configure(
        token=LOGFIRE_TOKEN,
        service_name=LOGFIRE_SERVICE_NAME,
        service_version=LOGFIRE_SERVICE_VERSION,
        environment=LOGFIRE_ENVIRONMENT,
    )

    instrumentations = (
        (LOGFIRE_TRACE_PYDANTIC_AI, "Pydantic AI", logfire.instrument_pydantic_ai),
        (LOGFIRE_TRACE_SQLALCHEMY, "SQLAlchemy", logfire.instrument_sqlalchemy),
        (LOGFIRE_TRACE_HTTPX, "HTTPX", logfire.instrument_httpx),
    )
    for enabled, label, instrument in instrumentations:
        if not enabled:
            continue
        try:
            instrument()
            logger.info(f"Logfire: {label} instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument {label}: {e}")

    _initialized = True
    logger.info(f"Logfire monitoring initialized: environment={LOGFIRE_ENVIRONMENT}, service={LOGFIRE_SERVICE_NAME}")
    return True


def log_run_finished(run_id: str, status: str, finish_reason: str, iterations: int, reason: Optional[str] = None) -> None:
    """
    Log the end of a run to Logfire when monitoring is active.

    Args:
        run_id: The unique identifier for the run
        status: Terminal run status
        finish_reason: Why the loop stopped
        iterations: Iterations executed
        reason: Human-readable reason, if any
    """
    if not _initialized:
        return
    try:
        import logfire

        logfire.info(
            "Agent run finished",
            run_id=run_id,
            status=status,
            finish_reason=finish_reason,
            iterations=iterations,
            reason=reason,
        )
    except Exception:
        logger.debug(f"Could not log run completion to Logfire: run_id={run_id}")
