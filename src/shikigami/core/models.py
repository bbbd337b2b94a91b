"""Domain models for the task graph, claim lifecycle and history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from shikigami.core.errors import invalid_choice


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    BLOCKED = "blocked"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    FAILED = "failed"
    DONE = "done"

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED})
CLAIMABLE_STATUSES = frozenset({TaskStatus.READY, TaskStatus.BLOCKED})


class DependencyType(str, Enum):
    """Edge kinds between tasks; only some of them gate readiness."""

    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"
    RELATED = "related"
    DISCOVERED_FROM = "discovered-from"

    @property
    def is_blocking(self) -> bool:
        return self in BLOCKING_DEPENDENCY_TYPES

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


BLOCKING_DEPENDENCY_TYPES = frozenset({DependencyType.BLOCKS, DependencyType.PARENT_CHILD})


class AuditOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class LedgerEntryType(str, Enum):
    """Kinds of free-text notes a worker can attach to a task."""

    HANDOFF = "handoff"
    LEARNING = "learning"

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


@dataclass(slots=True)
class DependencySpec:
    """Requested edge from a new task to an existing one (id or unique prefix)."""

    depends_on: str
    dependency_type: DependencyType = DependencyType.BLOCKS


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str
    priority: int = 0
    parent_id: str | None = None
    external_doc_id: str | None = None
    dependencies: list[DependencySpec] = field(default_factory=list)


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot returned to callers."""

    id: str
    title: str
    description: str
    status: TaskStatus
    priority: int
    assignee_id: str | None
    parent_id: str | None
    external_doc_id: str | None
    output_ref: str | None
    failure_context: str | None
    retry_count: int
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    delete_reason: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(slots=True, frozen=True)
class DependencyEdge:
    """Directed edge: ``task_id`` depends on ``depends_on_id``."""

    task_id: str
    depends_on_id: str
    dependency_type: DependencyType

    @property
    def is_blocking(self) -> bool:
        return self.dependency_type.is_blocking


@dataclass(slots=True)
class BlockingTask:
    """A blocking dependency target that is not yet satisfied."""

    id: str
    title: str
    status: TaskStatus
    dependency_type: DependencyType
    is_deleted: bool = False


@dataclass(slots=True)
class AuditEntryView:
    """One field-level change recorded in the audit trail."""

    id: int
    task_id: str
    operation: AuditOperation
    field: str | None
    old_value: str | None
    new_value: str | None
    actor: str | None
    timestamp: datetime


@dataclass(slots=True)
class LedgerEntryView:
    """Immutable handoff or learning note."""

    id: str
    task_id: str
    entry_type: LedgerEntryType
    content: str
    author_id: str | None
    created_at: datetime


@dataclass(slots=True)
class PredecessorHandoff:
    """Handoff note from a finished blocking predecessor, tagged with its source."""

    id: str
    content: str
    author_id: str | None
    created_at: datetime
    source_task_id: str
    source_task_title: str


@dataclass(slots=True)
class StartContext:
    """What a worker should read before starting a task."""

    handoffs: list[PredecessorHandoff] = field(default_factory=list)
    task_handoffs: list[LedgerEntryView] = field(default_factory=list)
    learnings: list[LedgerEntryView] = field(default_factory=list)


@dataclass(slots=True)
class ClaimResult:
    task: TaskView
    context: StartContext


@dataclass(slots=True)
class FinishResult:
    """Finished task plus the dependents it unblocked."""

    task: TaskView
    unblocked: list[TaskView] = field(default_factory=list)


@dataclass(slots=True)
class TaskDetails:
    """Task with its edges and ledger narrative."""

    task: TaskView
    dependencies: list[DependencyEdge]
    dependents: list[str]
    entries: list[LedgerEntryView]
    predecessor_handoffs: list[PredecessorHandoff]
    document_path: str | None


@dataclass(slots=True)
class ImportRecord:
    """One task in a bulk import batch.

    ``ref`` names the record inside the batch so later records can depend on it
    before it has a generated id. Dependencies may point at batch refs or at
    existing task ids/prefixes.
    """

    title: str
    description: str
    ref: str | None = None
    priority: int = 0
    parent: str | None = None
    external_doc_id: str | None = None
    dependencies: list[DependencySpec] = field(default_factory=list)


@dataclass(slots=True)
class ImportResult:
    dry_run: bool
    tasks: list[TaskView] = field(default_factory=list)
    refs: dict[str, str] = field(default_factory=dict)


def parse_status(value: TaskStatus | str) -> TaskStatus:
    """Validate a status once at the boundary."""

    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(value.strip().lower())
    except ValueError:
        raise invalid_choice("status", value, TaskStatus.values()) from None


def parse_dependency_type(value: DependencyType | str) -> DependencyType:
    if isinstance(value, DependencyType):
        return value
    try:
        return DependencyType(value.strip().lower())
    except ValueError:
        raise invalid_choice("dependency type", value, DependencyType.values()) from None


def parse_entry_type(value: LedgerEntryType | str) -> LedgerEntryType:
    if isinstance(value, LedgerEntryType):
        return value
    try:
        return LedgerEntryType(value.strip().lower())
    except ValueError:
        raise invalid_choice("entry type", value, LedgerEntryType.values()) from None
