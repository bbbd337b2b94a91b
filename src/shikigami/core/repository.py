"""Transactional facade over the task graph components."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from sqlmodel import Session

from shikigami.core.claims import ClaimStateMachine
from shikigami.core.errors import TaskNotFoundError
from shikigami.core.graph import DependencyGraph, TraversalResult
from shikigami.core.history import HistoryLog
from shikigami.core.hooks import ChangeSet, TaskChangeHook
from shikigami.core.importer import batch_refs
from shikigami.core.models import (
    AuditEntryView,
    BlockingTask,
    ClaimResult,
    DependencyEdge,
    DependencyType,
    FinishResult,
    ImportRecord,
    ImportResult,
    LedgerEntryType,
    LedgerEntryView,
    PredecessorHandoff,
    StartContext,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
    parse_dependency_type,
    parse_status,
)
from shikigami.core.readiness import ReadinessResolver
from shikigami.core.task_store import TaskStore
from shikigami.storage.alembic_runner import upgrade_head
from shikigami.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)

DEFAULT_DOCS_DIR = ".shikigami/prds"
DEFAULT_DOC_EXTENSION = "md"


@dataclass(slots=True)
class UnitOfWork:
    """Components bound to one session and therefore one transaction."""

    session: Session
    history: HistoryLog
    tasks: TaskStore
    graph: DependencyGraph
    readiness: ReadinessResolver
    claims: ClaimStateMachine
    changes: ChangeSet = field(default_factory=ChangeSet)

    @classmethod
    def open(cls, session: Session, *, allow_blocked_start: bool = True) -> UnitOfWork:
        changes = ChangeSet()
        history = HistoryLog(session)
        tasks = TaskStore(session, history=history, changes=changes)
        graph = DependencyGraph(session)
        readiness = ReadinessResolver(session, history=history, changes=changes)
        claims = ClaimStateMachine(
            tasks=tasks,
            graph=graph,
            readiness=readiness,
            history=history,
            allow_blocked_start=allow_blocked_start,
        )
        return cls(
            session=session,
            history=history,
            tasks=tasks,
            graph=graph,
            readiness=readiness,
            claims=claims,
            changes=changes,
        )


class TaskGraphRepository:  # noqa: PLR0904
    """Task graph persistence facade backed by SQLModel + SQLite.

    Each public method runs in exactly one unit of work. Task references may
    be exact ids or unique prefixes (with or without ``sk-``).
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        hooks: Iterable[TaskChangeHook] = (),
        docs_dir: str = DEFAULT_DOCS_DIR,
        doc_extension: str = DEFAULT_DOC_EXTENSION,
        allow_blocked_start: bool = True,
    ) -> None:
        self.db_path = db_path
        self.hooks = list(hooks)
        self.docs_dir = docs_dir
        self.doc_extension = doc_extension
        self.allow_blocked_start = allow_blocked_start
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    @contextmanager
    def unit_of_work(self, *, dry_run: bool = False) -> Iterator[UnitOfWork]:
        """Commit on success, roll back on any exception (or always, for ``dry_run``).

        Change hooks fire only after a successful commit.
        """

        with Session(self.engine) as session:
            uow = UnitOfWork.open(session, allow_blocked_start=self.allow_blocked_start)
            try:
                yield uow
            except BaseException:
                session.rollback()
                raise
            if dry_run:
                session.rollback()
                return
            pending = self._collect_notifications(uow) if self.hooks else None
            session.commit()
        if pending is not None:
            self._notify(*pending)

    # Tasks

    def create_task(self, payload: TaskCreate, *, actor: str | None = None) -> TaskView:
        """Create a task with its initial edges, then run the readiness pass."""

        with self.unit_of_work() as uow:
            task = self._create_in(uow, payload, actor=actor)
            uow.readiness.promote_eligible_tasks(actor=actor)
            return uow.tasks.require(task.id)

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> TaskView | None:
        with self.unit_of_work() as uow:
            return uow.tasks.get(task_id, include_deleted=include_deleted)

    def find_task(self, prefix: str, *, include_deleted: bool = False) -> TaskView | None:
        with self.unit_of_work() as uow:
            return uow.tasks.find_by_prefix(prefix, include_deleted=include_deleted)

    def find_tasks_by_prefix(
        self,
        prefix: str,
        *,
        include_deleted: bool = False,
    ) -> list[TaskView]:
        with self.unit_of_work() as uow:
            return uow.tasks.find_all_by_prefix(prefix, include_deleted=include_deleted)

    def resolve_task(self, ref: str, *, include_deleted: bool = False) -> TaskView:
        with self.unit_of_work() as uow:
            return uow.tasks.resolve(ref, include_deleted=include_deleted)

    def list_tasks(
        self,
        *,
        status: TaskStatus | str | None = None,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[TaskView]:
        with self.unit_of_work() as uow:
            if status is not None:
                return uow.tasks.list_by_status(parse_status(status), limit=limit)
            return uow.tasks.list_all(include_deleted=include_deleted, limit=limit)

    def list_active(self, *, limit: int | None = None) -> list[TaskView]:
        with self.unit_of_work() as uow:
            return uow.tasks.list_active(limit=limit)

    def list_ready(self, *, limit: int | None = None) -> list[TaskView]:
        with self.unit_of_work() as uow:
            return uow.tasks.list_by_status(TaskStatus.READY, limit=limit)

    def list_deleted(self) -> list[TaskView]:
        with self.unit_of_work() as uow:
            return uow.tasks.list_deleted()

    def list_by_external_doc(self, external_doc_id: str) -> list[TaskView]:
        with self.unit_of_work() as uow:
            return uow.tasks.list_by_external_doc(external_doc_id)

    def task_details(self, ref: str, *, include_deleted: bool = True) -> TaskDetails:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=include_deleted)
            return TaskDetails(
                task=task,
                dependencies=uow.graph.get_dependencies(task.id),
                dependents=[edge.task_id for edge in uow.graph.get_dependents(task.id)],
                entries=uow.history.get_ledger(task.id),
                predecessor_handoffs=uow.history.predecessor_handoffs(task.id),
                document_path=self.document_path(task),
            )

    def document_path(self, task: TaskView) -> str | None:
        """Conventional location of the task's requirements document; never checked on disk."""

        if not task.external_doc_id:
            return None
        return f"{self.docs_dir}/{task.external_doc_id}.{self.doc_extension}"

    # Lifecycle

    def update_status(
        self,
        ref: str,
        status: TaskStatus | str,
        *,
        actor: str | None = None,
    ) -> TaskView:
        target = parse_status(status)
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.claims.transition(task.id, target, actor=actor)

    def update_assignee(
        self,
        ref: str,
        assignee_id: str | None,
        *,
        actor: str | None = None,
    ) -> TaskView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.tasks.update_assignee(task.id, assignee_id, actor=actor)

    def update_priority(self, ref: str, priority: int, *, actor: str | None = None) -> TaskView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.tasks.update_priority(task.id, priority, actor=actor)

    def update_task(  # noqa: PLR0913
        self,
        ref: str,
        *,
        status: TaskStatus | str | None = None,
        priority: int | None = None,
        assignee_id: str | None = None,
        clear_assignee: bool = False,
        actor: str | None = None,
    ) -> TaskView:
        """Apply several field changes atomically; nothing is written if any of them fails."""

        target = parse_status(status) if status is not None else None
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            if priority is not None:
                task = uow.tasks.update_priority(task.id, priority, actor=actor)
            if assignee_id or clear_assignee:
                task = uow.tasks.update_assignee(
                    task.id,
                    None if clear_assignee else assignee_id,
                    actor=actor,
                )
            if target is not None:
                task = uow.claims.transition(task.id, target, actor=actor)
            return task

    def claim_task(
        self,
        ref: str,
        *,
        assignee_id: str | None = None,
        actor: str | None = None,
    ) -> ClaimResult:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.claims.claim(task.id, assignee_id=assignee_id, actor=actor)

    def finish_task(
        self,
        ref: str,
        output_ref: str,
        *,
        handoff: str | None = None,
        actor: str | None = None,
    ) -> FinishResult:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.claims.finish(task.id, output_ref, handoff=handoff, actor=actor)

    def fail_task(
        self,
        ref: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.claims.fail(task.id, reason=reason, actor=actor)

    def retry_task(self, ref: str, *, actor: str | None = None) -> TaskView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            return uow.claims.retry(task.id, actor=actor)

    def remove_task(
        self,
        ref: str,
        *,
        reason: str | None = None,
        deleted_by: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        """Soft-delete; an exact id of an already-removed task reports ``AlreadyDeletedError``."""

        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            removed = uow.tasks.soft_delete(
                task.id,
                reason=reason,
                deleted_by=deleted_by or actor,
                actor=actor,
            )
            # A tombstoned target no longer satisfies the edges pointing at it.
            dependents = [edge.task_id for edge in uow.graph.get_dependents(task.id)]
            uow.readiness.demote_unsatisfied(dependents, actor=actor)
            return removed

    def restore_task(self, ref: str, *, actor: str | None = None) -> TaskView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            restored = uow.tasks.restore(task.id, actor=actor)
            uow.readiness.promote_eligible_tasks(actor=actor)
            return restored

    def hard_delete_task(self, ref: str, *, actor: str | None = None) -> str:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            uow.tasks.hard_delete(task.id, actor=actor)
            # Dependents lose the edge to the deleted task and may now be unblocked.
            uow.readiness.promote_eligible_tasks(actor=actor)
            return task.id

    def promote_eligible_tasks(self, *, actor: str | None = None) -> int:
        with self.unit_of_work() as uow:
            return uow.readiness.promote_eligible_tasks(actor=actor)

    # Dependencies

    def add_dependency(
        self,
        ref: str,
        depends_on_ref: str,
        dependency_type: DependencyType | str = DependencyType.BLOCKS,
        *,
        actor: str | None = None,
    ) -> DependencyEdge:
        """Upsert the edge; a ``ready`` task gaining an unsatisfied blocking edge is demoted."""

        kind = parse_dependency_type(dependency_type)
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref)
            target = uow.tasks.resolve(depends_on_ref)
            edge = self._add_edge_in(uow, task.id, target.id, kind, actor=actor)
            uow.readiness.promote_eligible_tasks(actor=actor)
            return edge

    def remove_dependency(
        self,
        ref: str,
        depends_on_ref: str,
        *,
        actor: str | None = None,
    ) -> bool:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            target = uow.tasks.resolve(depends_on_ref, include_deleted=True)
            removed = uow.graph.remove_dependency(task.id, target.id)
            uow.readiness.promote_eligible_tasks(actor=actor)
            return removed

    def get_dependencies(self, ref: str) -> list[DependencyEdge]:
        with self.unit_of_work() as uow:
            return uow.graph.get_dependencies(uow.tasks.resolve(ref, include_deleted=True).id)

    def get_dependents(self, ref: str) -> list[str]:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            return [edge.task_id for edge in uow.graph.get_dependents(task.id)]

    def blocking_tasks(self, ref: str) -> list[BlockingTask]:
        with self.unit_of_work() as uow:
            return uow.graph.blocking_tasks(uow.tasks.resolve(ref, include_deleted=True).id)

    def all_dependencies_satisfied(self, ref: str) -> bool:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            return uow.graph.all_dependencies_satisfied(task.id)

    def dependency_tree(self, ref: str, *, max_depth: int | None = None) -> TraversalResult:
        with self.unit_of_work() as uow:
            root = uow.tasks.resolve(ref, include_deleted=True)
            tree = uow.graph.traverse(root.id, max_depth=max_depth)
            for task_id in tree.visited:
                node = uow.tasks.get(task_id, include_deleted=True)
                if node is not None:
                    tree.tasks[task_id] = node
            return tree

    # History

    def append_ledger(
        self,
        ref: str,
        entry_type: LedgerEntryType | str,
        content: str,
        *,
        author_id: str | None = None,
    ) -> LedgerEntryView:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            return uow.history.append_ledger(
                task_id=task.id,
                entry_type=entry_type,
                content=content,
                author_id=author_id,
            )

    def get_ledger(
        self,
        ref: str,
        *,
        entry_type: LedgerEntryType | str | None = None,
    ) -> list[LedgerEntryView]:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            return uow.history.get_ledger(task.id, entry_type=entry_type)

    def get_audit(self, ref: str, *, limit: int | None = None) -> list[AuditEntryView]:
        """Audit trail newest-first; also readable by exact id after a hard delete."""

        with self.unit_of_work() as uow:
            try:
                task_id = uow.tasks.resolve(ref, include_deleted=True).id
            except TaskNotFoundError as exc:
                if exc.ambiguous:
                    raise
                task_id = ref
            return uow.history.get_audit(task_id, limit=limit)

    def predecessor_handoffs(self, ref: str) -> list[PredecessorHandoff]:
        with self.unit_of_work() as uow:
            task = uow.tasks.resolve(ref, include_deleted=True)
            return uow.history.predecessor_handoffs(task.id)

    def start_context(self, ref: str) -> StartContext:
        with self.unit_of_work() as uow:
            return uow.history.start_context(uow.tasks.resolve(ref, include_deleted=True).id)

    # Import

    def import_tasks(
        self,
        records: Sequence[ImportRecord],
        *,
        dry_run: bool = False,
        actor: str | None = None,
    ) -> ImportResult:
        """Create a batch of tasks atomically.

        Records can reference each other as ``$<index>`` or by their ``ref``.
        With ``dry_run`` everything is validated inside a transaction that is
        then rolled back.
        """

        result = ImportResult(dry_run=dry_run)
        aliases = batch_refs(records)
        with self.unit_of_work(dry_run=dry_run) as uow:
            created: list[TaskView] = []
            for record, names in zip(records, aliases, strict=True):
                task = uow.tasks.create(
                    title=record.title,
                    description=record.description,
                    priority=record.priority,
                    external_doc_id=record.external_doc_id,
                    actor=actor,
                )
                created.append(task)
                for name in names:
                    result.refs[name] = task.id

            for record, task in zip(records, created, strict=True):
                if record.parent:
                    parent_id = self._batch_ref(uow, record.parent, result.refs)
                    uow.tasks.update_parent(task.id, parent_id, actor=actor)
                for dep in record.dependencies:
                    target_id = self._batch_ref(uow, dep.depends_on, result.refs)
                    uow.graph.add_dependency(task.id, target_id, dep.dependency_type)

            uow.readiness.promote_eligible_tasks(actor=actor)
            result.tasks = [uow.tasks.require(task.id) for task in created]
        logger.info(
            "Imported %d task(s)%s",
            len(result.tasks),
            " (dry run, rolled back)" if dry_run else "",
        )
        return result

    def _create_in(self, uow: UnitOfWork, payload: TaskCreate, *, actor: str | None) -> TaskView:
        parent_id = uow.tasks.resolve(payload.parent_id).id if payload.parent_id else None
        targets = [
            (uow.tasks.resolve(dep.depends_on).id, parse_dependency_type(dep.dependency_type))
            for dep in payload.dependencies
        ]
        task = uow.tasks.create(
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            parent_id=parent_id,
            external_doc_id=payload.external_doc_id,
            actor=actor,
        )
        for target_id, kind in targets:
            uow.graph.add_dependency(task.id, target_id, kind)
        return task

    def _add_edge_in(
        self,
        uow: UnitOfWork,
        task_id: str,
        target_id: str,
        kind: DependencyType,
        *,
        actor: str | None,
    ) -> DependencyEdge:
        edge = uow.graph.add_dependency(task_id, target_id, kind)
        if kind.is_blocking:
            uow.readiness.demote_unsatisfied([task_id], actor=actor)
        return edge

    @staticmethod
    def _batch_ref(uow: UnitOfWork, ref: str, refs: dict[str, str]) -> str:
        if ref in refs:
            return refs[ref]
        return uow.tasks.resolve(ref).id

    def _collect_notifications(
        self,
        uow: UnitOfWork,
    ) -> tuple[list[TaskView], list[TaskView], list[str]]:
        changes = uow.changes
        created = [
            task
            for task in (uow.tasks.get(task_id) for task_id in changes.created)
            if task is not None
        ]
        updated = [
            task
            for task in (uow.tasks.get(task_id) for task_id in changes.updated)
            if task is not None
        ]
        return created, updated, list(changes.deleted)

    def _notify(
        self,
        created: list[TaskView],
        updated: list[TaskView],
        deleted: list[str],
    ) -> None:
        for hook in self.hooks:
            try:
                for task in created:
                    hook.task_created(task)
                for task in updated:
                    hook.task_updated(task)
                for task_id in deleted:
                    hook.task_deleted(task_id)
            except Exception:
                logger.exception("Task change hook %r failed", hook)
