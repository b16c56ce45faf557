"""Create delayed_jobs table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "delayed_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("queue_name", sa.String(100), nullable=False),
        sa.Column("payload_ref", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("complete", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "completed_with_failure",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("misconfigured", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("attempts >= 0", name="ck_delayed_jobs_attempts"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_delayed_jobs_max_attempts"),
    )

    op.create_index(
        "ix_delayed_jobs_ready",
        "delayed_jobs",
        ["complete", "locked", "run_at", "priority"],
    )
    op.create_index("ix_delayed_jobs_locked_at", "delayed_jobs", ["locked", "locked_at"])
    op.create_index("ix_delayed_jobs_failed_at", "delayed_jobs", ["failed_at"])
    op.create_index("ix_delayed_jobs_queue_name", "delayed_jobs", ["queue_name"])
    op.create_index("ix_delayed_jobs_payload_ref", "delayed_jobs", ["payload_ref"])

    # Partial index for the dispatch poll
    op.execute("""
        CREATE INDEX ix_delayed_jobs_poll
        ON delayed_jobs (priority DESC, run_at)
        WHERE complete = false AND locked = false
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_delayed_jobs_poll")
    op.drop_index("ix_delayed_jobs_payload_ref")
    op.drop_index("ix_delayed_jobs_queue_name")
    op.drop_index("ix_delayed_jobs_failed_at")
    op.drop_index("ix_delayed_jobs_locked_at")
    op.drop_index("ix_delayed_jobs_ready")
    op.drop_table("delayed_jobs")
