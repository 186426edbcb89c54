"""In-process snapshot repository.

Used as the default store when no database is configured and in tests. It
honours the same contract as the SQL repository: read-merge-write operations
hold a per-run ``asyncio.Lock`` and every document handed in or out is a deep
copy, so callers never share state with the store.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from ...core.errors import RunAlreadyExistsError
from ..schemas.domain import StepResult, WorkflowRun, WorkflowRunsPage, WorkflowRunState
from .documents import check_status, empty_document, merge_state, merge_step_result, sanitize
from .interfaces import WorkflowSnapshotRepository


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Record:
    seq_id: int
    workflow_name: str
    run_id: str
    resource_id: Optional[str]
    snapshot: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_run(self) -> WorkflowRun:
        return WorkflowRun(
            workflow_name=self.workflow_name,
            run_id=self.run_id,
            resource_id=self.resource_id,
            snapshot=WorkflowRunState.model_validate(copy.deepcopy(self.snapshot)),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class InMemoryWorkflowSnapshotRepository(WorkflowSnapshotRepository):
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], _Record] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._seq = itertools.count(1)

    def _insert(self, key: Tuple[str, str], document: Dict[str, Any], resource_id: Optional[str]) -> _Record:
        now = _utc_now()
        record = _Record(
            seq_id=next(self._seq),
            workflow_name=key[0],
            run_id=key[1],
            resource_id=resource_id,
            snapshot=document,
            created_at=now,
            updated_at=now,
        )
        self._rows[key] = record
        return record

    async def persist_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        key = (workflow_name, run_id)
        document = sanitize(snapshot.to_document())
        async with self._locks[key]:
            record = self._rows.get(key)
            if record is None:
                self._insert(key, document, resource_id)
                return
            record.snapshot = document
            record.updated_at = _utc_now()
            if resource_id is not None:
                record.resource_id = resource_id

    async def create_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        key = (workflow_name, run_id)
        document = sanitize(snapshot.to_document())
        async with self._locks[key]:
            if key in self._rows:
                raise RunAlreadyExistsError(workflow_name, run_id)
            self._insert(key, document, resource_id)

    async def load_workflow_snapshot(self, *, workflow_name: str, run_id: str) -> Optional[WorkflowRunState]:
        record = self._rows.get((workflow_name, run_id))
        if record is None:
            return None
        return WorkflowRunState.model_validate(copy.deepcopy(record.snapshot))

    async def update_workflow_results(
        self,
        *,
        workflow_name: str,
        run_id: str,
        step_id: str,
        result: Union[StepResult, Dict[str, Any]],
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        key = (workflow_name, run_id)
        async with self._locks[key]:
            record = self._rows.get(key)
            base = record.snapshot if record is not None else empty_document(run_id)
            merged = sanitize(merge_step_result(base, step_id, result, request_context))
            if record is None:
                self._insert(key, merged, None)
            else:
                record.snapshot = merged
                record.updated_at = _utc_now()
            return copy.deepcopy(merged["context"])

    async def update_workflow_state(
        self,
        *,
        workflow_name: str,
        run_id: str,
        opts: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[WorkflowRunState]:
        key = (workflow_name, run_id)
        async with self._locks[key]:
            record = self._rows.get(key)
            if record is None:
                return None
            check_status(record.snapshot, expected_status, run_id=run_id)
            merged = sanitize(
                merge_state(record.snapshot, opts, operation="update_state", workflow_name=workflow_name, run_id=run_id)
            )
            record.snapshot = merged
            record.updated_at = _utc_now()
            return WorkflowRunState.model_validate(copy.deepcopy(merged))

    async def get_workflow_run_by_id(self, *, run_id: str, workflow_name: Optional[str] = None) -> Optional[WorkflowRun]:
        matches = [
            r for r in self._rows.values() if r.run_id == run_id and (workflow_name is None or r.workflow_name == workflow_name)
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.seq_id).to_run()

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
        def _matches(r: _Record) -> bool:
            if workflow_name is not None and r.workflow_name != workflow_name:
                return False
            if resource_id is not None and r.resource_id != resource_id:
                return False
            if status is not None and r.snapshot.get("status") != status:
                return False
            if from_date is not None and r.created_at < from_date:
                return False
            if to_date is not None and r.created_at > to_date:
                return False
            return True

        matching = sorted((r for r in self._rows.values() if _matches(r)), key=lambda r: r.seq_id, reverse=True)
        selected = matching if per_page is None else matching[page * per_page : (page + 1) * per_page]
        return WorkflowRunsPage(runs=[r.to_run() for r in selected], total=len(matching))

    async def delete_workflow_run_by_id(self, *, workflow_name: str, run_id: str) -> None:
        key = (workflow_name, run_id)
        async with self._locks[key]:
            self._rows.pop(key, None)
