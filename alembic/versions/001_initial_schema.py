"""Background runs and product events

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "background_runs" in existing_tables:
        return

    # Create background_runs table
    op.create_table(
        "background_runs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("project_id", sa.Text, nullable=False),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("run_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="queued"),
        sa.Column("input", JSONType, nullable=False),
        sa.Column("metadata", JSONType, nullable=False),
        sa.Column("output", JSONType),
        sa.Column("idempotency_key", sa.Text),
        sa.Column("retryable", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_heartbeat_at", sa.DateTime),
        sa.Column("next_retry_at", sa.DateTime),
        sa.Column("error_message", sa.Text),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime),
        sa.Column("finished_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')",
            name="ck_background_runs_status",
        ),
        sa.CheckConstraint("attempt_count >= 0", name="ck_background_runs_attempt_count"),
        sa.CheckConstraint("max_attempts >= 1 AND max_attempts <= 10", name="ck_background_runs_max_attempts"),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_background_runs_progress"),
    )
    op.create_index("idx_background_runs_project", "background_runs", ["project_id"])
    op.create_index("idx_background_runs_user", "background_runs", ["user_id"])
    op.create_index("idx_background_runs_status", "background_runs", ["status"])
    op.create_index("idx_background_runs_created", "background_runs", ["created_at"])
    op.create_index("idx_background_runs_retry_at", "background_runs", ["next_retry_at"])
    op.create_index(
        "idx_background_runs_idempotency",
        "background_runs",
        ["project_id", "user_id", "run_type", "idempotency_key"],
        unique=True,
        sqlite_where=sa.text("idempotency_key IS NOT NULL"),
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )

    # Create product_events table
    op.create_table(
        "product_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("project_id", sa.Text),
        sa.Column("event_name", sa.Text, nullable=False),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("event_data", JSONType, nullable=False),
        sa.Column("occurred_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_product_events_session", "product_events", ["session_id"])
    op.create_index("idx_product_events_name", "product_events", ["event_name"])


def downgrade() -> None:
    op.drop_table("product_events")
    op.drop_table("background_runs")
