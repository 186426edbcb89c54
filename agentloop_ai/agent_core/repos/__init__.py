"""Snapshot persistence: repository contract, SQL and in-memory backends."""

from .interfaces import WorkflowSnapshotRepository
from .memory import InMemoryWorkflowSnapshotRepository
from .sql import SqlWorkflowSnapshotRepository, create_all, create_engine, create_sessionmaker

__all__ = [
    "WorkflowSnapshotRepository",
    "InMemoryWorkflowSnapshotRepository",
    "SqlWorkflowSnapshotRepository",
    "create_all",
    "create_engine",
    "create_sessionmaker",
]
