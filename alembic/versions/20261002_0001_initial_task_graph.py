"""Create task, dependency, audit and ledger tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="blocked", nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("assignee_id", sa.String(), nullable=True),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("external_doc_id", sa.String(), nullable=True),
        sa.Column("output_ref", sa.String(), nullable=True),
        sa.Column("failure_context", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(), nullable=True),
        sa.Column("delete_reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["tasks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_tasks_status", "tasks", ["status"], unique=False)
    op.create_index(
        "idx_tasks_priority_created",
        "tasks",
        [sa.text("priority DESC"), "created_at"],
        unique=False,
    )
    op.create_index("idx_tasks_external_doc", "tasks", ["external_doc_id"], unique=False)
    op.create_index("idx_tasks_parent", "tasks", ["parent_id"], unique=False)

    op.create_table(
        "task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_id", sa.String(), nullable=False),
        sa.Column("dependency_type", sa.String(), server_default="blocks", nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["depends_on_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
    )
    op.create_index(
        "idx_task_dependencies_target",
        "task_dependencies",
        ["depends_on_id"],
        unique=False,
    )
    op.create_index(
        "idx_task_dependencies_type",
        "task_dependencies",
        ["dependency_type"],
        unique=False,
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("field", sa.String(), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_log_task_time", "audit_log", ["task_id", "timestamp"], unique=False)

    op.create_table(
        "task_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "entry_type IN ('handoff', 'learning')",
            name="ck_task_ledger_entry_type",
        ),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_task_ledger_task_time",
        "task_ledger",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index("idx_task_ledger_entry_type", "task_ledger", ["entry_type"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_task_ledger_entry_type", table_name="task_ledger")
    op.drop_index("idx_task_ledger_task_time", table_name="task_ledger")
    op.drop_table("task_ledger")
    op.drop_index("idx_audit_log_task_time", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("idx_task_dependencies_type", table_name="task_dependencies")
    op.drop_index("idx_task_dependencies_target", table_name="task_dependencies")
    op.drop_table("task_dependencies")
    op.drop_index("idx_tasks_parent", table_name="tasks")
    op.drop_index("idx_tasks_external_doc", table_name="tasks")
    op.drop_index("idx_tasks_priority_created", table_name="tasks")
    op.drop_index("idx_tasks_status", table_name="tasks")
    op.drop_table("tasks")
