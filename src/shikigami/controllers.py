"""Controllers for shiki CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shikigami.config import Settings
from shikigami.core.graph import TraversalResult
from shikigami.core.importer import load_import_file
from shikigami.core.models import (
    DependencySpec,
    StartContext,
    TaskCreate,
    TaskView,
    parse_dependency_type,
    parse_entry_type,
    parse_status,
)
from shikigami.core.repository import TaskGraphRepository


@dataclass(slots=True)
class InitCommand:
    db_path: Path | None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    description: str
    priority: int = 0
    parent: str | None = None
    external_doc_id: str | None = None
    depends_on: tuple[str, ...] = ()
    dependency_type: str = "blocks"


@dataclass(slots=True)
class ShowTaskCommand:
    db_path: Path | None
    task_ref: str
    output_format: str = "text"


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None = None
    show_all: bool = False
    deleted: bool = False
    external_doc_id: str | None = None
    limit: int | None = None
    output_format: str = "text"


@dataclass(slots=True)
class ReadyTasksCommand:
    db_path: Path | None
    limit: int | None = None
    output_format: str = "text"


@dataclass(slots=True)
class StartTaskCommand:
    db_path: Path | None
    task_ref: str
    assignee: str | None = None


@dataclass(slots=True)
class FinishTaskCommand:
    """CLI input for completing a task."""

    db_path: Path | None
    task_ref: str
    output_ref: str
    handoff: str | None = None


@dataclass(slots=True)
class FailTaskCommand:
    db_path: Path | None
    task_ref: str
    reason: str | None = None


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for retry/restore operations."""

    db_path: Path | None
    task_ref: str


@dataclass(slots=True)
class UpdateTaskCommand:
    db_path: Path | None
    task_ref: str
    status: str | None = None
    assignee: str | None = None
    clear_assignee: bool = False
    priority: int | None = None


@dataclass(slots=True)
class RemoveTaskCommand:
    db_path: Path | None
    task_ref: str
    reason: str | None = None
    hard: bool = False


@dataclass(slots=True)
class AuditLogCommand:
    db_path: Path | None
    task_ref: str
    limit: int | None = None


@dataclass(slots=True)
class LedgerListCommand:
    db_path: Path | None
    task_ref: str
    entry_type: str | None = None


@dataclass(slots=True)
class LedgerAddCommand:
    db_path: Path | None
    task_ref: str
    entry_type: str
    content: str
    author: str | None = None


@dataclass(slots=True)
class DependencyCommand:
    """CLI input for adding/removing one edge."""

    db_path: Path | None
    task_ref: str
    depends_on: str
    dependency_type: str = "blocks"


@dataclass(slots=True)
class DependencyTreeCommand:
    db_path: Path | None
    task_ref: str
    max_depth: int | None = None


@dataclass(slots=True)
class BlockedByCommand:
    db_path: Path | None
    task_ref: str


@dataclass(slots=True)
class ImportTasksCommand:
    db_path: Path | None
    file: Path
    dry_run: bool = False


class ShikigamiCliController:  # noqa: PLR0904
    """Application controller for task graph commands."""

    def init(self, command: InitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Initialized task database: {settings.db_path}"]

    def add(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        kind = parse_dependency_type(command.dependency_type)
        payload = TaskCreate(
            title=command.title,
            description=command.description,
            priority=command.priority,
            parent_id=command.parent,
            external_doc_id=command.external_doc_id,
            dependencies=[
                DependencySpec(depends_on=ref, dependency_type=kind) for ref in command.depends_on
            ],
        )
        with _repository(settings) as repository:
            task = repository.create_task(payload, actor=settings.actor.actor_id)
        return [f"Created {task.id} [{task.status.value}] {task.title}"]

    def show(self, command: ShowTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.task_details(command.task_ref)
            blocking = repository.blocking_tasks(details.task.id)

        task = details.task
        if command.output_format == "json":
            payload = _task_payload(task)
            payload["dependencies"] = [
                {"id": edge.depends_on_id, "type": edge.dependency_type.value}
                for edge in details.dependencies
            ]
            payload["dependents"] = details.dependents
            payload["document_path"] = details.document_path
            payload["ledger"] = [
                {
                    "id": entry.id,
                    "type": entry.entry_type.value,
                    "content": entry.content,
                    "author_id": entry.author_id,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in details.entries
            ]
            return [_dump_json(payload)]

        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Assignee: {task.assignee_id or '-'}",
            f"Parent: {task.parent_id or '-'}",
            f"Document: {details.document_path or '-'}",
            f"Retries: {task.retry_count}",
            f"Created: {task.created_at.isoformat()}",
            f"Updated: {task.updated_at.isoformat()}",
        ]
        if task.output_ref:
            lines.append(f"Output: {task.output_ref}")
        if task.failure_context:
            lines.append(f"Failure: {task.failure_context}")
        if task.is_deleted:
            lines.append(
                f"Deleted: {task.deleted_at.isoformat() if task.deleted_at else '-'} "
                f"by={task.deleted_by or '-'} reason={task.delete_reason or '-'}",
            )
        lines.extend(["", task.description, ""])
        lines.append(f"Dependencies: {len(details.dependencies)}")
        for edge in details.dependencies:
            lines.append(f"  {edge.depends_on_id} ({edge.dependency_type.value})")
        if blocking:
            lines.append("Blocked by:")
            for item in blocking:
                lines.append(f"  {item.id} [{item.status.value}] {item.title}")
        lines.append(f"Dependents: {', '.join(details.dependents) or '-'}")
        if details.predecessor_handoffs:
            lines.append("Predecessor handoffs:")
            for handoff in details.predecessor_handoffs:
                lines.append(f"  [{handoff.source_task_id}] {handoff.content}")
        if details.entries:
            lines.append("Ledger:")
            for entry in details.entries:
                lines.append(
                    f"  {entry.created_at.isoformat()} {entry.entry_type.value} "
                    f"({entry.author_id or '-'}): {entry.content}",
                )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.deleted:
                tasks = repository.list_deleted()
            elif command.external_doc_id:
                tasks = repository.list_by_external_doc(command.external_doc_id)
            elif command.status:
                tasks = repository.list_tasks(
                    status=parse_status(command.status),
                    limit=command.limit,
                )
            elif command.show_all:
                tasks = repository.list_tasks(limit=command.limit)
            else:
                tasks = repository.list_active(limit=command.limit)
        return _task_lines(tasks, output_format=command.output_format, title="Tasks")

    def ready(self, command: ReadyTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_ready(limit=command.limit)
        if not tasks and command.output_format != "json":
            return ["No ready tasks."]
        return _task_lines(tasks, output_format=command.output_format, title="Ready tasks")

    def start(self, command: StartTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        actor = settings.actor.actor_id
        with _repository(settings) as repository:
            result = repository.claim_task(
                command.task_ref,
                assignee_id=command.assignee or actor,
                actor=actor,
            )
        lines = [f"Started {result.task.id}: {result.task.title}"]
        lines.extend(_context_lines(result.context))
        return lines

    def finish(self, command: FinishTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.finish_task(
                command.task_ref,
                command.output_ref,
                handoff=command.handoff,
                actor=settings.actor.actor_id,
            )
        lines = [f"Finished {result.task.id} ({result.task.output_ref})"]
        if result.unblocked:
            lines.append("Unblocked:")
            for task in result.unblocked:
                lines.append(f"  {task.id} {task.title}")
        return lines

    def fail(self, command: FailTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.fail_task(
                command.task_ref,
                reason=command.reason,
                actor=settings.actor.actor_id,
            )
        return [f"Task failed: {task.id}"]

    def retry(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.retry_task(command.task_ref, actor=settings.actor.actor_id)
        return [f"Task reset for retry: {task.id} [{task.status.value}] attempt {task.retry_count}"]

    def update(self, command: UpdateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        actor = settings.actor.actor_id
        if command.status is None and command.priority is None and not (
            command.assignee or command.clear_assignee
        ):
            raise ValueError("Nothing to update: pass --status, --assignee or --priority.")
        status = parse_status(command.status) if command.status is not None else None
        with _repository(settings) as repository:
            task = repository.update_task(
                command.task_ref,
                status=status,
                priority=command.priority,
                assignee_id=command.assignee,
                clear_assignee=command.clear_assignee,
                actor=actor,
            )
        return [f"Updated {task.id} [{task.status.value}] priority={task.priority}"]

    def remove(self, command: RemoveTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        actor = settings.actor.actor_id
        with _repository(settings) as repository:
            if command.hard:
                task_id = repository.hard_delete_task(command.task_ref, actor=actor)
                return [f"Task permanently deleted: {task_id}"]
            task = repository.remove_task(command.task_ref, reason=command.reason, actor=actor)
        return [f"Task removed: {task.id}"]

    def restore(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.restore_task(command.task_ref, actor=settings.actor.actor_id)
        return [f"Task restored: {task.id} [{task.status.value}]"]

    def log(self, command: AuditLogCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entries = repository.get_audit(command.task_ref, limit=command.limit)
        lines = [f"Audit entries: {len(entries)}"]
        for entry in entries:
            change = ""
            if entry.field:
                change = f" {entry.field}: {entry.old_value or '-'} -> {entry.new_value or '-'}"
            lines.append(
                f"  {entry.timestamp.isoformat()} {entry.operation.value}{change} "
                f"actor={entry.actor or '-'}",
            )
        return lines

    def ledger_list(self, command: LedgerListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        entry_type = parse_entry_type(command.entry_type) if command.entry_type else None
        with _repository(settings) as repository:
            entries = repository.get_ledger(command.task_ref, entry_type=entry_type)
        lines = [f"Ledger entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.entry_type.value} "
                f"({entry.author_id or '-'}): {entry.content}",
            )
        return lines

    def ledger_add(self, command: LedgerAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entry = repository.append_ledger(
                command.task_ref,
                parse_entry_type(command.entry_type),
                command.content,
                author_id=command.author or settings.actor.actor_id,
            )
        return [f"Ledger {entry.entry_type.value} {entry.id} added to {entry.task_id}"]

    def deps_add(self, command: DependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            edge = repository.add_dependency(
                command.task_ref,
                command.depends_on,
                parse_dependency_type(command.dependency_type),
                actor=settings.actor.actor_id,
            )
        return [
            f"{edge.task_id} now depends on {edge.depends_on_id} ({edge.dependency_type.value})",
        ]

    def deps_remove(self, command: DependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resolve_task(command.task_ref, include_deleted=True)
            target = repository.resolve_task(command.depends_on, include_deleted=True)
            removed = repository.remove_dependency(
                task.id,
                target.id,
                actor=settings.actor.actor_id,
            )
        if not removed:
            return [f"No dependency from {task.id} to {target.id}."]
        return [f"Removed dependency {task.id} -> {target.id}"]

    def deps_tree(self, command: DependencyTreeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        max_depth = command.max_depth
        if max_depth is None:
            max_depth = settings.traversal.max_depth
        with _repository(settings) as repository:
            tree = repository.dependency_tree(command.task_ref, max_depth=max_depth)
        return _tree_lines(tree)

    def deps_blocked(self, command: BlockedByCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resolve_task(command.task_ref, include_deleted=True)
            blocking = repository.blocking_tasks(task.id)
        if not blocking:
            return [f"{task.id} is not blocked."]
        lines = [f"{task.id} is waiting on {len(blocking)} task(s):"]
        for item in blocking:
            deleted = " (deleted)" if item.is_deleted else ""
            lines.append(
                f"  {item.id} [{item.status.value}] {item.title} "
                f"({item.dependency_type.value}){deleted}",
            )
        return lines

    def import_tasks(self, command: ImportTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        records = load_import_file(command.file)
        with _repository(settings) as repository:
            result = repository.import_tasks(
                records,
                dry_run=command.dry_run,
                actor=settings.actor.actor_id,
            )
        verb = "Would import" if result.dry_run else "Imported"
        lines = [f"{verb} {len(result.tasks)} task(s)"]
        for task in result.tasks:
            if result.dry_run:
                lines.append(f"  {task.title}")
            else:
                lines.append(f"  {task.id} [{task.status.value}] {task.title}")
        return lines


def _task_lines(tasks: list[TaskView], *, output_format: str, title: str) -> list[str]:
    if output_format == "json":
        return [_dump_json({"tasks": [_task_payload(task) for task in tasks], "count": len(tasks)})]
    lines = [f"{title}: {len(tasks)}"]
    for task in tasks:
        lines.append(
            "  "
            f"{task.id} [{task.status.value}] p={task.priority} "
            f"assignee={task.assignee_id or '-'} {task.title}",
        )
    return lines


def _context_lines(context: StartContext) -> list[str]:
    lines: list[str] = []
    if context.handoffs:
        lines.append("Read before starting:")
        for handoff in context.handoffs:
            lines.append(
                f"  [{handoff.source_task_id}] {handoff.source_task_title}: {handoff.content}",
            )
    if context.task_handoffs:
        lines.append("Notes from earlier attempts:")
        for entry in context.task_handoffs:
            lines.append(f"  {entry.author_id or '-'}: {entry.content}")
    if context.learnings:
        lines.append("Learnings on this task:")
        for entry in context.learnings:
            lines.append(f"  {entry.content}")
    return lines


def _tree_lines(tree: TraversalResult) -> list[str]:
    lines: list[str] = []
    printed: set[str] = set()

    def _walk(task_id: str, indent: int, label: str) -> None:
        task = tree.tasks.get(task_id)
        status = task.status.value if task is not None else "?"
        title = task.title if task is not None else ""
        suffix = " (see above)" if task_id in printed else ""
        lines.append(f"{'  ' * indent}{label}{task_id} [{status}] {title}{suffix}".rstrip())
        if task_id in printed:
            return
        printed.add(task_id)
        for edge in tree.edges.get(task_id, []):
            if edge.depends_on_id not in tree.edges:
                pad = "  " * (indent + 1)
                lines.append(f"{pad}{edge.dependency_type.value}: {edge.depends_on_id} ...")
                continue
            _walk(edge.depends_on_id, indent + 1, f"{edge.dependency_type.value}: ")

    _walk(tree.root_id, 0, "")
    return lines


def _task_payload(task: TaskView) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority,
        "assignee_id": task.assignee_id,
        "parent_id": task.parent_id,
        "external_doc_id": task.external_doc_id,
        "output_ref": task.output_ref,
        "failure_context": task.failure_context,
        "retry_count": task.retry_count,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
        "deleted_at": task.deleted_at.isoformat() if task.deleted_at else None,
    }


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskGraphRepository]:
    settings.validate()
    repository = TaskGraphRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        docs_dir=settings.documents.docs_dir,
        doc_extension=settings.documents.extension,
        allow_blocked_start=settings.claims.allow_blocked_start,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
