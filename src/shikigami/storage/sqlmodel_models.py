"""SQLModel ORM tables for the task graph."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    String,
    Text,
    text,
)
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_priority_created", text("priority DESC"), "created_at"),
    )

    id: str = Field(primary_key=True)
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(
        default="blocked",
        sa_column=Column(String, nullable=False, server_default="blocked", index=True),
    )
    priority: int = Field(default=0, sa_column_kwargs={"server_default": text("0")})
    assignee_id: str | None = None
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True),
    )
    external_doc_id: str | None = Field(default=None, index=True)
    output_ref: str | None = None
    failure_context: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0, sa_column_kwargs={"server_default": text("0")})
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    deleted_by: str | None = None
    delete_reason: str | None = Field(default=None, sa_column=Column(Text))


class DependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
    )

    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
    )
    depends_on_id: str = Field(
        sa_column=Column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    dependency_type: str = Field(
        default="blocks",
        sa_column=Column(String, nullable=False, server_default="blocks", index=True),
    )


class AuditRow(SQLModel, table=True):
    __tablename__ = "audit_log"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_log_task_time", "task_id", "timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str
    operation: str
    field: str | None = None
    old_value: str | None = Field(default=None, sa_column=Column(Text))
    new_value: str | None = Field(default=None, sa_column=Column(Text))
    actor: str | None = None
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerRow(SQLModel, table=True):
    __tablename__ = "task_ledger"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('handoff', 'learning')",
            name="ck_task_ledger_entry_type",
        ),
        Index("idx_task_ledger_task_time", "task_id", "created_at"),
    )

    id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
    )
    entry_type: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    author_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
