"""Error types shared across the agent loop.

Errors fall into three categories:

- ``user``: bad run configuration or missing arguments. Surfaced immediately and
  never retried.
- ``third_party``: model providers and storage drivers. Transient model errors
  are retried locally before they surface.
- ``system``: invariant violations, such as a persisted snapshot that has lost
  its context map.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    user = "user"
    third_party = "third_party"
    system = "system"


class AgentLoopError(Exception):
    """Base error for all agent loop exceptions."""

    category: ErrorCategory = ErrorCategory.system

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AgentLoopError):
    """Raised when a run is configured with invalid or missing arguments."""

    category = ErrorCategory.user


class RunNotFoundError(AgentLoopError):
    """Raised when an entry point references a run that does not exist."""

    category = ErrorCategory.user

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: '{run_id}'", details={"run_id": run_id})
        self.run_id = run_id


class RunAlreadyExistsError(AgentLoopError):
    """Raised when a new run is started under an id that already has a snapshot."""

    category = ErrorCategory.user

    def __init__(self, workflow_name: str, run_id: str) -> None:
        super().__init__(
            f"Run '{run_id}' already exists in workflow '{workflow_name}'",
            details={"workflow_name": workflow_name, "run_id": run_id},
        )
        self.workflow_name = workflow_name
        self.run_id = run_id


class InvalidRunStateError(AgentLoopError):
    """Raised when an operation is not valid for the run's current status."""

    category = ErrorCategory.user

    def __init__(self, run_id: str, status: str, expected: str) -> None:
        super().__init__(
            f"Run '{run_id}' is '{status}', expected '{expected}'",
            details={"run_id": run_id, "status": status, "expected": expected},
        )
        self.run_id = run_id
        self.status = status


class ModelInvocationError(AgentLoopError):
    """Raised when a model call fails, tagged with a failure classification.

    ``kind`` is one of the ``ModelErrorKind`` values (auth, model_not_found,
    context_length, rate_limit, network, unknown).
    """

    category = ErrorCategory.third_party

    def __init__(self, kind: str, message: str, *, model_id: Optional[str] = None) -> None:
        super().__init__(
            f"Model invocation failed ({kind}){f' for {model_id!r}' if model_id else ''}: {message}",
            details={"kind": kind, "model_id": model_id},
        )
        self.kind = kind
        self.model_id = model_id

    @property
    def retryable(self) -> bool:
        return self.kind in ("rate_limit", "network")


class SnapshotPersistenceError(AgentLoopError):
    """Raised when a snapshot operation fails in the storage layer.

    The transaction has been rolled back by the time this is raised.
    """

    category = ErrorCategory.third_party

    def __init__(self, operation: str, workflow_name: str, run_id: str, message: str) -> None:
        super().__init__(
            f"Snapshot {operation} failed for workflow '{workflow_name}' run '{run_id}': {message}",
            details={"operation": operation, "workflow_name": workflow_name, "run_id": run_id},
        )
        self.operation = operation
        self.workflow_name = workflow_name
        self.run_id = run_id


class SnapshotIntegrityError(SnapshotPersistenceError):
    """Raised when a persisted snapshot row exists but is structurally broken."""

    category = ErrorCategory.system


class ToolSuspended(Exception):
    """Raised by a tool body to suspend the run until it is resumed.

    ``payload`` is persisted in the snapshot's ``suspendedPaths`` and handed back
    to whoever answers the suspension.
    """

    def __init__(self, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__("tool requested suspension")
        self.payload: Dict[str, Any] = dict(payload or {})
