"""Create execution checkpoint table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "execution_checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("checkpoint_type", sa.String(), server_default="auto", nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )
    op.create_index(
        "ix_execution_checkpoints_ticket_id",
        "execution_checkpoints",
        ["ticket_id"],
        unique=False,
    )
    op.create_index(
        "ix_execution_checkpoints_checkpoint_type",
        "execution_checkpoints",
        ["checkpoint_type"],
        unique=False,
    )
    op.create_index(
        "idx_execution_checkpoints_ticket_time",
        "execution_checkpoints",
        ["ticket_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_execution_checkpoints_ticket_time", table_name="execution_checkpoints")
    op.drop_index("ix_execution_checkpoints_checkpoint_type", table_name="execution_checkpoints")
    op.drop_index("ix_execution_checkpoints_ticket_id", table_name="execution_checkpoints")
    op.drop_table("execution_checkpoints")
