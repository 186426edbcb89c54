"""SQLAlchemy async snapshot repository.

Usage
-----

Typical wiring (tests or application setup):

- Create an async engine with ``create_engine``.
- Create tables with ``create_all`` (for tests/dev; production uses the alembic
  migration).
- Create a session factory with ``create_sessionmaker``.
- Build the repository with ``SqlWorkflowSnapshotRepository(session_factory)``.

Transaction model
-----------------

Every read-merge-write opens one transaction and reads the row with
``SELECT ... FOR UPDATE`` so concurrent writers for the same run serialize on
the row lock. SQLite has no row locks; engines created by ``create_engine`` for
SQLite start every transaction with ``BEGIN IMMEDIATE`` instead, which takes the
database write lock up front.

When two writers race to create the first row for a run, the loser hits the
unique key, rolls back and retries once against the winner's row. ``create_workflow_snapshot``
is the exception: it is insert-only, and hitting the unique key means the run
already exists.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from sqlalchemy import delete, event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ...core.errors import RunAlreadyExistsError, SnapshotPersistenceError
from ..schemas.domain import StepResult, WorkflowRun, WorkflowRunsPage, WorkflowRunState
from .documents import check_status, empty_document, merge_state, merge_step_result, sanitize
from .interfaces import WorkflowSnapshotRepository
from .models import Base, WorkflowSnapshotRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Postgres URLs are normalized to the asyncpg driver (``postgresql://`` and
    other variants become ``postgresql+asyncpg://``). SQLite engines start
    every transaction with ``BEGIN IMMEDIATE``.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    engine = create_async_engine(url, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        _use_immediate_transactions(engine)
    return engine


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` with safe defaults for this project."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables for the current ORM metadata.

    This is mainly intended for tests and local development.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_run(row: WorkflowSnapshotRow) -> WorkflowRun:
    return WorkflowRun(
        workflow_name=row.workflow_name,
        run_id=row.run_id,
        resource_id=row.resource_id,
        snapshot=WorkflowRunState.model_validate(row.snapshot),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


@dataclass(frozen=True)
class SqlWorkflowSnapshotRepository(WorkflowSnapshotRepository):
    """SQL implementation of ``WorkflowSnapshotRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def _guard(self, operation: str, workflow_name: str, run_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn``, retrying once on a first-insert race, and wrap storage errors."""
        for attempt in range(2):
            try:
                return await fn()
            except IntegrityError as e:
                if attempt == 0:
                    logger.debug(f"Concurrent insert for {workflow_name}/{run_id} during {operation}; retrying")
                    continue
                raise SnapshotPersistenceError(operation, workflow_name, run_id, str(e)) from e
            except SnapshotPersistenceError:
                raise
            except SQLAlchemyError as e:
                logger.error(f"Snapshot {operation} failed for {workflow_name}/{run_id}: {e}")
                raise SnapshotPersistenceError(operation, workflow_name, run_id, str(e)) from e
        raise AssertionError("unreachable")

    @staticmethod
    async def _locked_row(s: AsyncSession, workflow_name: str, run_id: str) -> Optional[WorkflowSnapshotRow]:
        stmt = (
            select(WorkflowSnapshotRow)
            .where(WorkflowSnapshotRow.workflow_name == workflow_name, WorkflowSnapshotRow.run_id == run_id)
            .with_for_update()
        )
        return (await s.execute(stmt)).scalar_one_or_none()

    async def persist_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        document = sanitize(snapshot.to_document())

        async def _persist() -> None:
            async with self.session_factory() as s, s.begin():
                row = await self._locked_row(s, workflow_name, run_id)
                now = _utc_now()
                if row is None:
                    s.add(
                        WorkflowSnapshotRow(
                            workflow_name=workflow_name,
                            run_id=run_id,
                            resource_id=resource_id,
                            snapshot=document,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                else:
                    row.snapshot = document
                    row.updated_at = now
                    if resource_id is not None:
                        row.resource_id = resource_id

        await self._guard("persist", workflow_name, run_id, _persist)

    async def create_workflow_snapshot(
        self,
        *,
        workflow_name: str,
        run_id: str,
        snapshot: WorkflowRunState,
        resource_id: Optional[str] = None,
    ) -> None:
        document = sanitize(snapshot.to_document())

        async def _create() -> None:
            now = _utc_now()
            try:
                async with self.session_factory() as s, s.begin():
                    s.add(
                        WorkflowSnapshotRow(
                            workflow_name=workflow_name,
                            run_id=run_id,
                            resource_id=resource_id,
                            snapshot=document,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError as e:
                raise RunAlreadyExistsError(workflow_name, run_id) from e

        await self._guard("create", workflow_name, run_id, _create)

    async def load_workflow_snapshot(self, *, workflow_name: str, run_id: str) -> Optional[WorkflowRunState]:
        async def _load() -> Optional[WorkflowRunState]:
            async with self.session_factory() as s:
                stmt = select(WorkflowSnapshotRow.snapshot).where(
                    WorkflowSnapshotRow.workflow_name == workflow_name, WorkflowSnapshotRow.run_id == run_id
                )
                document = (await s.execute(stmt)).scalar_one_or_none()
            return WorkflowRunState.model_validate(document) if document is not None else None

        return await self._guard("load", workflow_name, run_id, _load)

    async def update_workflow_results(
        self,
        *,
        workflow_name: str,
        run_id: str,
        step_id: str,
        result: Union[StepResult, Dict[str, Any]],
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        async def _merge() -> Dict[str, Any]:
            async with self.session_factory() as s, s.begin():
                row = await self._locked_row(s, workflow_name, run_id)
                now = _utc_now()
                if row is None:
                    merged = sanitize(merge_step_result(empty_document(run_id), step_id, result, request_context))
                    s.add(
                        WorkflowSnapshotRow(
                            workflow_name=workflow_name,
                            run_id=run_id,
                            snapshot=merged,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                else:
                    merged = sanitize(merge_step_result(row.snapshot, step_id, result, request_context))
                    row.snapshot = merged
                    row.updated_at = now
            return merged["context"]

        return await self._guard("update_results", workflow_name, run_id, _merge)

    async def update_workflow_state(
        self,
        *,
        workflow_name: str,
        run_id: str,
        opts: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[WorkflowRunState]:
        async def _update() -> Optional[WorkflowRunState]:
            async with self.session_factory() as s, s.begin():
                row = await self._locked_row(s, workflow_name, run_id)
                if row is None:
                    return None
                check_status(row.snapshot, expected_status, run_id=run_id)
                merged = sanitize(
                    merge_state(
                        row.snapshot, opts, operation="update_state", workflow_name=workflow_name, run_id=run_id
                    )
                )
                row.snapshot = merged
                row.updated_at = _utc_now()
            return WorkflowRunState.model_validate(merged)

        return await self._guard("update_state", workflow_name, run_id, _update)

    async def get_workflow_run_by_id(self, *, run_id: str, workflow_name: Optional[str] = None) -> Optional[WorkflowRun]:
        async def _get() -> Optional[WorkflowRun]:
            stmt = select(WorkflowSnapshotRow).where(WorkflowSnapshotRow.run_id == run_id)
            if workflow_name is not None:
                stmt = stmt.where(WorkflowSnapshotRow.workflow_name == workflow_name)
            stmt = stmt.order_by(WorkflowSnapshotRow.seq_id.desc()).limit(1)
            async with self.session_factory() as s:
                row = (await s.execute(stmt)).scalar_one_or_none()
                return _to_run(row) if row is not None else None

        return await self._guard("get", workflow_name or "*", run_id, _get)

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
        filters = []
        if workflow_name is not None:
            filters.append(WorkflowSnapshotRow.workflow_name == workflow_name)
        if resource_id is not None:
            filters.append(WorkflowSnapshotRow.resource_id == resource_id)
        if status is not None:
            filters.append(WorkflowSnapshotRow.snapshot["status"].as_string() == status)
        if from_date is not None:
            filters.append(WorkflowSnapshotRow.created_at >= from_date)
        if to_date is not None:
            filters.append(WorkflowSnapshotRow.created_at <= to_date)

        async def _list() -> WorkflowRunsPage:
            async with self.session_factory() as s:
                total = await s.scalar(select(func.count()).select_from(WorkflowSnapshotRow).where(*filters))
                stmt = select(WorkflowSnapshotRow).where(*filters).order_by(WorkflowSnapshotRow.seq_id.desc())
                if per_page is not None:
                    stmt = stmt.limit(per_page).offset(page * per_page)
                rows = (await s.execute(stmt)).scalars().all()
                return WorkflowRunsPage(runs=[_to_run(r) for r in rows], total=int(total or 0))

        return await self._guard("list", workflow_name or "*", "*", _list)

    async def delete_workflow_run_by_id(self, *, workflow_name: str, run_id: str) -> None:
        async def _delete() -> None:
            async with self.session_factory() as s, s.begin():
                await s.execute(
                    delete(WorkflowSnapshotRow).where(
                        WorkflowSnapshotRow.workflow_name == workflow_name, WorkflowSnapshotRow.run_id == run_id
                    )
                )

        await self._guard("delete", workflow_name, run_id, _delete)
