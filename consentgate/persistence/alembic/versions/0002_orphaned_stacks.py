"""orphaned stacks

Revision ID: 0002_orphaned_stacks
Revises: 0001_init
Create Date: 2026-09-28 16:45:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_orphaned_stacks"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Track stacks whose local record was removed before teardown was confirmed.
    op.create_table(
        "orphaned_stacks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("stack_name", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("domain_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        # Null under the manual cleanup policy.
        sa.Column("cleanup_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orphaned_stacks_stack_name", "orphaned_stacks", ["stack_name"])
    op.create_index(
        "ix_orphaned_stacks_status_cleanup_after",
        "orphaned_stacks",
        ["status", "cleanup_after"],
    )


def downgrade() -> None:
    op.drop_index("ix_orphaned_stacks_status_cleanup_after", table_name="orphaned_stacks")
    op.drop_index("ix_orphaned_stacks_stack_name", table_name="orphaned_stacks")
    op.drop_table("orphaned_stacks")
