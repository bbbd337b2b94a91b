"""Batch promotion of blocked tasks whose blocking dependencies are all done."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import exists
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from shikigami.core.history import HistoryLog
from shikigami.core.hooks import ChangeSet
from shikigami.core.models import BLOCKING_DEPENDENCY_TYPES, AuditOperation, TaskStatus
from shikigami.storage.common import to_db_datetime, utc_now
from shikigami.storage.sqlmodel_models import DependencyRow, TaskRow

logger = logging.getLogger(__name__)


class ReadinessResolver:
    """Recomputes eligibility as a full pass over live ``blocked`` tasks.

    The pass only ever moves ``blocked -> ready`` and each write is guarded by
    ``status = 'blocked'``, so running it redundantly or concurrently is a no-op.
    The reverse move is explicit: callers that can make a satisfied edge
    unsatisfied (new edges, tombstoned targets) call ``demote_unsatisfied``.
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

    def eligible_task_ids(self) -> list[str]:
        statement = (
            select(TaskRow.id)
            .where(
                TaskRow.status == TaskStatus.BLOCKED.value,
                col(TaskRow.deleted_at).is_(None),
                ~exists(_unsatisfied_edges()),
            )
            .order_by(col(TaskRow.priority).desc(), col(TaskRow.created_at).asc())
        )
        return list(self.session.exec(statement).all())

    def promote_eligible_tasks(self, *, actor: str | None = None) -> int:
        """Move every eligible ``blocked`` task to ``ready``; returns how many moved."""

        promoted = 0
        for task_id in self.eligible_task_ids():
            if self._move(task_id, TaskStatus.BLOCKED, TaskStatus.READY, actor=actor):
                promoted += 1
        if promoted:
            logger.info("Promoted %d task(s) to ready", promoted)
        return promoted

    def demote_unsatisfied(self, task_ids: Iterable[str], *, actor: str | None = None) -> list[str]:
        """Move ``ready`` tasks with an unsatisfied blocking edge back to ``blocked``.

        Only ``task_ids`` are considered. Claimed and terminal tasks are left alone.
        """

        candidates = list(dict.fromkeys(task_ids))
        if not candidates:
            return []
        statement = select(TaskRow.id).where(
            col(TaskRow.id).in_(candidates),
            TaskRow.status == TaskStatus.READY.value,
            col(TaskRow.deleted_at).is_(None),
            exists(_unsatisfied_edges()),
        )
        demoted = [
            task_id
            for task_id in self.session.exec(statement).all()
            if self._move(task_id, TaskStatus.READY, TaskStatus.BLOCKED, actor=actor)
        ]
        if demoted:
            logger.info("Moved %d task(s) back to blocked: %s", len(demoted), ", ".join(demoted))
        return demoted

    def _move(
        self,
        task_id: str,
        old: TaskStatus,
        new: TaskStatus,
        *,
        actor: str | None,
    ) -> bool:
        result = self.session.exec(
            sa_update(TaskRow)
            .where(
                col(TaskRow.id) == task_id,
                col(TaskRow.status) == old.value,
                col(TaskRow.deleted_at).is_(None),
            )
            .values(status=new.value, updated_at=to_db_datetime(utc_now()))
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            return False
        self.changes.mark_updated(task_id)
        if actor:
            self.history.append_audit(
                task_id=task_id,
                operation=AuditOperation.UPDATE,
                field="status",
                old_value=old,
                new_value=new,
                actor=actor,
            )
        return True


def _unsatisfied_edges():
    """Blocking edges of the outer ``TaskRow`` whose target is not done, or is tombstoned."""

    target = aliased(TaskRow)
    return (
        select(DependencyRow.task_id)
        .join(target, col(target.id) == col(DependencyRow.depends_on_id))
        .where(
            col(DependencyRow.task_id) == col(TaskRow.id),
            col(DependencyRow.dependency_type).in_(
                [kind.value for kind in BLOCKING_DEPENDENCY_TYPES],
            ),
            (col(target.status) != TaskStatus.DONE.value) | col(target.deleted_at).is_not(None),
        )
    )
