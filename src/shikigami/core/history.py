"""Append-only audit trail and handoff/learning ledger."""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import literal_column
from sqlmodel import Session, col, select

from shikigami.core.errors import TaskNotFoundError
from shikigami.core.ids import generate_id
from shikigami.core.models import (
    BLOCKING_DEPENDENCY_TYPES,
    AuditEntryView,
    AuditOperation,
    LedgerEntryType,
    LedgerEntryView,
    PredecessorHandoff,
    StartContext,
    TaskStatus,
    parse_entry_type,
)
from shikigami.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from shikigami.storage.sqlmodel_models import AuditRow, DependencyRow, LedgerRow, TaskRow

logger = logging.getLogger(__name__)


class HistoryLog:
    """Writes and reads the immutable history of a task.

    Audit entries are returned newest-first ("what just happened"), ledger
    entries oldest-first ("read the story in order").
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def append_audit(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        operation: AuditOperation,
        field: str | None = None,
        old_value: object | None = None,
        new_value: object | None = None,
        actor: str | None = None,
    ) -> None:
        self._require_task(task_id)
        self.session.add(
            AuditRow(
                task_id=task_id,
                operation=operation.value,
                field=field,
                old_value=_audit_text(old_value),
                new_value=_audit_text(new_value),
                actor=actor,
                timestamp=to_db_datetime(utc_now()),
            ),
        )
        self.session.flush()

    def append_ledger(
        self,
        *,
        task_id: str,
        entry_type: LedgerEntryType | str,
        content: str,
        author_id: str | None = None,
    ) -> LedgerEntryView:
        kind = parse_entry_type(entry_type)
        self._require_task(task_id)

        row = LedgerRow(
            id=generate_id(_LedgerIdProbe(self.session)),
            task_id=task_id,
            entry_type=kind.value,
            content=content,
            author_id=author_id,
            created_at=to_db_datetime(utc_now()),
        )
        self.session.add(row)
        self.session.flush()
        logger.debug("Ledger %s entry %s added to %s", kind.value, row.id, task_id)
        return _to_ledger_view(row)

    def get_audit(self, task_id: str, *, limit: int | None = None) -> list[AuditEntryView]:
        statement = (
            select(AuditRow)
            .where(AuditRow.task_id == task_id)
            .order_by(col(AuditRow.timestamp).desc(), col(AuditRow.id).desc())
        )
        if limit:
            statement = statement.limit(limit)
        return [_to_audit_view(row) for row in self.session.exec(statement).all()]

    def get_ledger(
        self,
        task_id: str,
        *,
        entry_type: LedgerEntryType | str | None = None,
    ) -> list[LedgerEntryView]:
        statement = select(LedgerRow).where(LedgerRow.task_id == task_id)
        if entry_type is not None:
            statement = statement.where(LedgerRow.entry_type == parse_entry_type(entry_type).value)
        statement = statement.order_by(
            col(LedgerRow.created_at).asc(),
            literal_column("task_ledger.rowid").asc(),
        )
        return [_to_ledger_view(row) for row in self.session.exec(statement).all()]

    def predecessor_handoffs(self, task_id: str) -> list[PredecessorHandoff]:
        """Handoff notes left on finished blocking predecessors of ``task_id``."""

        rows = self.session.exec(
            select(LedgerRow, TaskRow.title)
            .join(DependencyRow, col(DependencyRow.depends_on_id) == col(LedgerRow.task_id))
            .join(TaskRow, col(TaskRow.id) == col(LedgerRow.task_id))
            .where(
                DependencyRow.task_id == task_id,
                col(DependencyRow.dependency_type).in_(
                    [kind.value for kind in BLOCKING_DEPENDENCY_TYPES],
                ),
                TaskRow.status == TaskStatus.DONE.value,
                col(TaskRow.deleted_at).is_(None),
                LedgerRow.entry_type == LedgerEntryType.HANDOFF.value,
            )
            .order_by(
                col(LedgerRow.created_at).asc(),
                literal_column("task_ledger.rowid").asc(),
            ),
        ).all()
        return [
            PredecessorHandoff(
                id=entry.id,
                content=entry.content,
                author_id=entry.author_id,
                created_at=to_utc_aware_datetime(entry.created_at),
                source_task_id=entry.task_id,
                source_task_title=title,
            )
            for entry, title in rows
        ]

    def start_context(self, task_id: str) -> StartContext:
        return StartContext(
            handoffs=self.predecessor_handoffs(task_id),
            task_handoffs=self.get_ledger(task_id, entry_type=LedgerEntryType.HANDOFF),
            learnings=self.get_ledger(task_id, entry_type=LedgerEntryType.LEARNING),
        )

    def _require_task(self, task_id: str) -> None:
        if self.session.get(TaskRow, task_id) is None:
            raise TaskNotFoundError(task_id)


class _LedgerIdProbe:
    def __init__(self, session: Session) -> None:
        self.session = session

    def __contains__(self, candidate: object) -> bool:
        return self.session.get(LedgerRow, candidate) is not None


def _audit_text(value: object | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _to_audit_view(row: AuditRow) -> AuditEntryView:
    return AuditEntryView(
        id=row.id or 0,
        task_id=row.task_id,
        operation=AuditOperation(row.operation),
        field=row.field,
        old_value=row.old_value,
        new_value=row.new_value,
        actor=row.actor,
        timestamp=to_utc_aware_datetime(row.timestamp),
    )


def _to_ledger_view(row: LedgerRow) -> LedgerEntryView:
    return LedgerEntryView(
        id=row.id,
        task_id=row.task_id,
        entry_type=LedgerEntryType(row.entry_type),
        content=row.content,
        author_id=row.author_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
