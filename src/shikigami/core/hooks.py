"""Change notifications for collaborators that mirror task data (search indexers)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from shikigami.core.models import TaskView


@runtime_checkable
class TaskChangeHook(Protocol):
    """Called after a unit of work commits.

    ``task_updated`` means "re-read this task"; soft-deleted and hard-deleted
    tasks are both reported through ``task_deleted``.
    """

    def task_created(self, task: TaskView) -> None: ...

    def task_updated(self, task: TaskView) -> None: ...

    def task_deleted(self, task_id: str) -> None: ...


@dataclass(slots=True)
class ChangeSet:
    """Task ids touched inside one unit of work, in first-touch order."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def mark_created(self, task_id: str) -> None:
        _append_once(self.created, task_id)

    def mark_updated(self, task_id: str) -> None:
        if task_id in self.created or task_id in self.deleted:
            return
        _append_once(self.updated, task_id)

    def mark_deleted(self, task_id: str) -> None:
        if task_id in self.created:
            self.created.remove(task_id)
            return
        if task_id in self.updated:
            self.updated.remove(task_id)
        _append_once(self.deleted, task_id)

    def mark_restored(self, task_id: str) -> None:
        if task_id in self.deleted:
            self.deleted.remove(task_id)
        self.mark_updated(task_id)

    def __bool__(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


def _append_once(target: list[str], task_id: str) -> None:
    if task_id not in target:
        target.append(task_id)
