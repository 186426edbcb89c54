"""Repository interface contracts.

The runtime depends on these Protocols instead of concrete persistence
implementations.

Contract guidelines
-------------------

- All methods are async.
- Exactly one snapshot exists per ``(workflow_name, run_id)``.
- Every read-merge-write runs inside one transaction that holds an exclusive
  lock on the target row, so concurrent writers for one run serialize instead
  of overwriting each other's step results.
- Storage failures surface as ``SnapshotPersistenceError`` carrying the run
  identifiers, after the transaction has rolled back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Union

from ..schemas.domain import StepResult, WorkflowRun, WorkflowRunsPage, WorkflowRunState


class WorkflowSnapshotRepository(Protocol):
    """Persist and query resumable run snapshots."""

    async def persist_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        """
        Replace the whole snapshot for a run, creating the row if needed.

        Args:
            workflow_name: Workflow the run belongs to.
            run_id: Run identifier.
            snapshot: The full snapshot document.
            resource_id: Optional owner of the run; kept when omitted on update.
        """
        ...

    async def create_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        """
        Insert the first snapshot for a new run.

        Unlike ``persist_workflow_snapshot`` this never touches an existing row.

        Raises:
            RunAlreadyExistsError: If a snapshot for ``(workflow_name, run_id)``
                already exists.
        """
        ...

    async def load_workflow_snapshot(self, *, workflow_name: str, run_id: str) -> Optional[WorkflowRunState]:
        """
        Load a run's snapshot.

        Returns:
            The snapshot, or None if no row exists.
        """
        ...

    async def update_workflow_results(
        self,
        *,
        workflow_name: str,
        run_id: str,
        step_id: str,
        result: Union[StepResult, Dict[str, Any]],
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Merge one step's result (and request-context deltas) into the snapshot.

        A fully initialized empty snapshot is synthesized inside the same
        transaction when no row exists yet.

        Returns:
            The merged ``context`` map.
        """
        ...

    async def update_workflow_state(
        self,
        *,
        workflow_name: str,
        run_id: str,
        opts: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[WorkflowRunState]:
        """
        Shallow-merge top-level snapshot options (camelCase keys).

        With ``expected_status`` the stored status is checked under the same
        row lock as the write, so only one of several racing callers can move
        a run out of that status.

        Returns:
            The updated snapshot, or None when no row exists.

        Raises:
            SnapshotIntegrityError: If the row exists but has no context map.
            InvalidRunStateError: If ``expected_status`` is given and the stored
                status differs. Nothing is written.
        """
        ...

    async def get_workflow_run_by_id(self, *, run_id: str, workflow_name: Optional[str] = None) -> Optional[WorkflowRun]:
        """
        Fetch one run's row.

        Returns:
            The newest matching row, or None.
        """
        ...

    async def list_workflow_runs(
        self,
        *,
        workflow_name: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 0,
        per_page: Optional[int] = None,
    ) -> WorkflowRunsPage:
        """
        List runs newest first by insertion sequence.

        Args:
            workflow_name: Only runs of this workflow.
            resource_id: Only runs owned by this resource.
            status: Only runs whose snapshot ``status`` matches.
            from_date: Inclusive lower bound on creation time.
            to_date: Inclusive upper bound on creation time.
            page: Zero-based page index.
            per_page: Page size; None returns all matches.

        Returns:
            The page of runs plus the total number of matches.
        """
        ...

    async def delete_workflow_run_by_id(self, *, workflow_name: str, run_id: str) -> None:
        """Remove a run's row. Deleting a missing row is a no-op."""
        ...
