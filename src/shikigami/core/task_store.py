"""Task records: creation, lookup, single-field mutations and tombstones."""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from shikigami.core.errors import AlreadyDeletedError, TaskNotFoundError, TaskValidationError
from shikigami.core.history import HistoryLog
from shikigami.core.hooks import ChangeSet
from shikigami.core.ids import generate_id, normalize_prefix
from shikigami.core.models import (
    TERMINAL_STATUSES,
    AuditOperation,
    TaskStatus,
    TaskView,
)
from shikigami.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from shikigami.storage.sqlmodel_models import TaskRow

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class TaskStore:
    """Owns task rows and their lifecycle fields.

    Every mutation bumps ``updated_at``; when an ``actor`` is given it also
    appends one audit entry per changed field.
    """

    def __init__(
        self,
        session: Session,
        *,
        history: HistoryLog,
        changes: ChangeSet | None = None,
    ) -> None:
        self.session = session
        self.history = history
        self.changes = changes if changes is not None else ChangeSet()

    def create(  # noqa: PLR0913
        self,
        *,
        title: str,
        description: str,
        priority: int = 0,
        parent_id: str | None = None,
        external_doc_id: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        """Insert a task in ``blocked``; the caller runs the readiness pass."""

        if not title or not title.strip():
            raise TaskValidationError("title", "Task title must not be empty.")
        if not description or not description.strip():
            raise TaskValidationError("description", "Task description must not be empty.")
        if parent_id is not None:
            self._row(parent_id)

        now = to_db_datetime(utc_now())
        row = TaskRow(
            id=generate_id(_TaskIdProbe(self.session)),
            title=title.strip(),
            description=description,
            status=TaskStatus.BLOCKED.value,
            priority=int(priority),
            parent_id=parent_id,
            external_doc_id=external_doc_id or None,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        self.session.flush()
        if actor:
            self.history.append_audit(task_id=row.id, operation=AuditOperation.CREATE, actor=actor)
        self.changes.mark_created(row.id)
        logger.debug("Task created id=%s priority=%s", row.id, row.priority)
        return _to_task_view(row)

    def get(self, task_id: str, *, include_deleted: bool = False) -> TaskView | None:
        row = self._find_row(task_id, include_deleted=include_deleted)
        return _to_task_view(row) if row is not None else None

    def require(self, task_id: str, *, include_deleted: bool = False) -> TaskView:
        return _to_task_view(self._row(task_id, include_deleted=include_deleted))

    def find_by_prefix(self, prefix: str, *, include_deleted: bool = False) -> TaskView | None:
        """Exact id first, then a unique prefix match; ambiguous prefixes yield ``None``."""

        exact = self.get(prefix, include_deleted=include_deleted)
        if exact is not None:
            return exact
        candidates = self.find_all_by_prefix(prefix, include_deleted=include_deleted, limit=2)
        if len(candidates) == 1:
            return candidates[0]
        return None

    def find_all_by_prefix(
        self,
        prefix: str,
        *,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[TaskView]:
        if not prefix or not prefix.strip():
            return []
        statement = select(TaskRow).where(
            col(TaskRow.id).startswith(normalize_prefix(prefix), autoescape=True),
        )
        if not include_deleted:
            statement = statement.where(col(TaskRow.deleted_at).is_(None))
        statement = statement.order_by(col(TaskRow.id).asc())
        if limit:
            statement = statement.limit(limit)
        return self._views(statement)

    def resolve(self, ref: str, *, include_deleted: bool = False) -> TaskView:
        """Like ``find_by_prefix`` but raises, naming candidates when ambiguous."""

        found = self.find_by_prefix(ref, include_deleted=include_deleted)
        if found is not None:
            return found
        candidates = self.find_all_by_prefix(ref, include_deleted=include_deleted)
        raise TaskNotFoundError(ref, candidates=[task.id for task in candidates])

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        actor: str | None = None,
    ) -> TaskView:
        return self._set_field(task_id, "status", status.value, actor=actor)

    def update_assignee(
        self,
        task_id: str,
        assignee_id: str | None,
        *,
        actor: str | None = None,
    ) -> TaskView:
        return self._set_field(task_id, "assignee_id", assignee_id or None, actor=actor)

    def update_priority(self, task_id: str, priority: int, *, actor: str | None = None) -> TaskView:
        return self._set_field(task_id, "priority", int(priority), actor=actor)

    def update_parent(
        self,
        task_id: str,
        parent_id: str | None,
        *,
        actor: str | None = None,
    ) -> TaskView:
        if parent_id is not None:
            if parent_id == task_id:
                raise TaskValidationError("parent", "A task cannot be its own parent.")
            self._row(parent_id)
        return self._set_field(task_id, "parent_id", parent_id, actor=actor)

    def record_outcome(
        self,
        task_id: str,
        output_ref: str,
        *,
        actor: str | None = None,
    ) -> TaskView:
        return self._set_field(task_id, "output_ref", output_ref, actor=actor)

    def record_failure(
        self,
        task_id: str,
        failure_context: str,
        *,
        actor: str | None = None,
    ) -> TaskView:
        return self._set_field(task_id, "failure_context", failure_context, actor=actor)

    def increment_retry(self, task_id: str, *, actor: str | None = None) -> int:
        previous = self._row(task_id).retry_count
        self.session.exec(
            sa_update(TaskRow)
            .where(col(TaskRow.id) == task_id)
            .values(
                retry_count=col(TaskRow.retry_count) + 1,
                updated_at=to_db_datetime(utc_now()),
            ),
        )
        current = self._row(task_id, include_deleted=True).retry_count
        if actor:
            self._audit_update(task_id, "retry_count", previous, current, actor)
        self.changes.mark_updated(task_id)
        return current

    def compare_and_set_status(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        expected: Collection[TaskStatus],
        new_status: TaskStatus,
        assignee_id: str | None = _UNSET,
        actor: str | None = None,
    ) -> bool:
        """Single conditional write: move a live task only if its status is in ``expected``.

        Returns ``False`` when no row matched; the caller decides what that means.
        """

        previous = self._find_row(task_id)
        values: dict[str, Any] = {
            "status": new_status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if assignee_id is not _UNSET:
            values["assignee_id"] = assignee_id
        result = self.session.exec(
            sa_update(TaskRow)
            .where(
                col(TaskRow.id) == task_id,
                col(TaskRow.deleted_at).is_(None),
                col(TaskRow.status).in_([status.value for status in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            return False

        if actor and previous is not None:
            self._audit_update(task_id, "status", previous.status, new_status.value, actor)
            if assignee_id is not _UNSET and previous.assignee_id != assignee_id:
                self._audit_update(
                    task_id,
                    "assignee_id",
                    previous.assignee_id,
                    assignee_id,
                    actor,
                )
        self.changes.mark_updated(task_id)
        return True

    def soft_delete(
        self,
        task_id: str,
        *,
        reason: str | None = None,
        deleted_by: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        now = to_db_datetime(utc_now())
        result = self.session.exec(
            sa_update(TaskRow)
            .where(col(TaskRow.id) == task_id, col(TaskRow.deleted_at).is_(None))
            .values(
                deleted_at=now,
                deleted_by=deleted_by,
                delete_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            self._row(task_id, include_deleted=True)
            raise AlreadyDeletedError(task_id)
        if actor:
            self.history.append_audit(task_id=task_id, operation=AuditOperation.DELETE, actor=actor)
        self.changes.mark_deleted(task_id)
        logger.info("Task %s removed (reason=%s)", task_id, reason or "-")
        return self.require(task_id, include_deleted=True)

    def restore(self, task_id: str, *, actor: str | None = None) -> TaskView:
        row = self._row(task_id, include_deleted=True)
        if row.deleted_at is None:
            return _to_task_view(row)
        row.deleted_at = None
        row.deleted_by = None
        row.delete_reason = None
        row.updated_at = to_db_datetime(utc_now())
        self.session.add(row)
        self.session.flush()
        if actor:
            self._audit_update(task_id, "deleted_at", "(deleted)", "(restored)", actor)
        self.changes.mark_restored(task_id)
        logger.info("Task %s restored", task_id)
        return _to_task_view(row)

    def hard_delete(self, task_id: str, *, actor: str | None = None) -> None:
        """Physically remove the task; edges and ledger entries cascade."""

        self._row(task_id, include_deleted=True)
        if actor:
            self.history.append_audit(
                task_id=task_id,
                operation=AuditOperation.DELETE,
                field="hard_delete",
                actor=actor,
            )
        self.session.exec(sa_delete(TaskRow).where(col(TaskRow.id) == task_id))
        self.session.expunge_all()
        self.changes.mark_deleted(task_id)
        logger.info("Task %s hard-deleted", task_id)

    def list_all(
        self,
        *,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[TaskView]:
        statement = select(TaskRow)
        if not include_deleted:
            statement = statement.where(col(TaskRow.deleted_at).is_(None))
        return self._views(_by_priority(statement), limit=limit)

    def list_by_status(self, status: TaskStatus, *, limit: int | None = None) -> list[TaskView]:
        statement = select(TaskRow).where(
            TaskRow.status == status.value,
            col(TaskRow.deleted_at).is_(None),
        )
        return self._views(_by_priority(statement), limit=limit)

    def list_active(self, *, limit: int | None = None) -> list[TaskView]:
        """Live tasks outside the terminal statuses."""

        statement = select(TaskRow).where(
            col(TaskRow.status).not_in([status.value for status in TERMINAL_STATUSES]),
            col(TaskRow.deleted_at).is_(None),
        )
        return self._views(_by_priority(statement), limit=limit)

    def list_deleted(self) -> list[TaskView]:
        statement = (
            select(TaskRow)
            .where(col(TaskRow.deleted_at).is_not(None))
            .order_by(col(TaskRow.deleted_at).desc())
        )
        return self._views(statement)

    def list_by_external_doc(self, external_doc_id: str) -> list[TaskView]:
        statement = select(TaskRow).where(
            TaskRow.external_doc_id == external_doc_id,
            col(TaskRow.deleted_at).is_(None),
        )
        return self._views(_by_priority(statement))

    def _set_field(
        self,
        task_id: str,
        field: str,
        value: object | None,
        *,
        actor: str | None,
    ) -> TaskView:
        row = self._row(task_id)
        previous = getattr(row, field)
        setattr(row, field, value)
        row.updated_at = to_db_datetime(utc_now())
        self.session.add(row)
        self.session.flush()
        if actor:
            self._audit_update(task_id, field, previous, value, actor)
        self.changes.mark_updated(task_id)
        return _to_task_view(row)

    def _audit_update(
        self,
        task_id: str,
        field: str,
        old_value: object | None,
        new_value: object | None,
        actor: str,
    ) -> None:
        self.history.append_audit(
            task_id=task_id,
            operation=AuditOperation.UPDATE,
            field=field,
            old_value=old_value,
            new_value=new_value,
            actor=actor,
        )

    def _row(self, task_id: str, *, include_deleted: bool = False) -> TaskRow:
        row = self._find_row(task_id, include_deleted=include_deleted)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _find_row(self, task_id: str, *, include_deleted: bool = False) -> TaskRow | None:
        statement = select(TaskRow).where(TaskRow.id == task_id)
        if not include_deleted:
            statement = statement.where(col(TaskRow.deleted_at).is_(None))
        return self.session.exec(
            statement.execution_options(populate_existing=True),
        ).one_or_none()

    def _views(
        self,
        statement: SelectOfScalar[TaskRow],
        *,
        limit: int | None = None,
    ) -> list[TaskView]:
        if limit:
            statement = statement.limit(limit)
        rows = self.session.exec(statement.execution_options(populate_existing=True)).all()
        return [_to_task_view(row) for row in rows]


class _TaskIdProbe:
    """Lazy membership test so id generation does not load every id."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def __contains__(self, candidate: object) -> bool:
        return self.session.get(TaskRow, candidate) is not None


def _by_priority(statement: SelectOfScalar[TaskRow]) -> SelectOfScalar[TaskRow]:
    # Older tasks win ties at equal priority.
    return statement.order_by(
        col(TaskRow.priority).desc(),
        col(TaskRow.created_at).asc(),
        col(TaskRow.id).asc(),
    )


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=row.priority,
        assignee_id=row.assignee_id,
        parent_id=row.parent_id,
        external_doc_id=row.external_doc_id,
        output_ref=row.output_ref,
        failure_context=row.failure_context,
        retry_count=row.retry_count,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        deleted_at=to_utc_aware_datetime(row.deleted_at) if row.deleted_at is not None else None,
        deleted_by=row.deleted_by,
        delete_reason=row.delete_reason,
    )
