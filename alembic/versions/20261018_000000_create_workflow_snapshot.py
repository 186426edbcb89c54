"""Create the workflow snapshot table for AgentLoop-AI

Revision ID: 20261018_000000
Revises: None
Create Date: 2026-10-18 00:00:00.000000

This is the initial migration for the AgentLoop-AI snapshot store. It creates:
- al_workflow_snapshot: one resumable snapshot per (workflow_name, run_id),
  with a monotonic seq_id used for stable pagination

Revision format: YYYYMMDD_HHMMSS_description

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the snapshot table and its indexes."""

    op.create_table(
        "al_workflow_snapshot",
        sa.Column("seq_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workflow_name", sa.String(255), nullable=False),
        sa.Column("run_id", sa.String(255), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("snapshot", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq_id"),
        sa.UniqueConstraint("workflow_name", "run_id", name="uq_al_workflow_snapshot_workflow_run"),
    )
    op.create_index("ix_al_workflow_snapshot_workflow_name", "al_workflow_snapshot", ["workflow_name"])
    op.create_index("ix_al_workflow_snapshot_run_id", "al_workflow_snapshot", ["run_id"])
    op.create_index("ix_al_workflow_snapshot_resource_id", "al_workflow_snapshot", ["resource_id"])
    op.create_index("ix_al_workflow_snapshot_created_at", "al_workflow_snapshot", ["created_at"])


def downgrade() -> None:
    """Drop the snapshot table."""
    op.drop_index("ix_al_workflow_snapshot_created_at", table_name="al_workflow_snapshot")
    op.drop_index("ix_al_workflow_snapshot_resource_id", table_name="al_workflow_snapshot")
    op.drop_index("ix_al_workflow_snapshot_run_id", table_name="al_workflow_snapshot")
    op.drop_index("ix_al_workflow_snapshot_workflow_name", table_name="al_workflow_snapshot")
    op.drop_table("al_workflow_snapshot")
