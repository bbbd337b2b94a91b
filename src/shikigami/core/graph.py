"""Typed dependency edges between tasks and graph traversal."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from shikigami.core.errors import TaskNotFoundError, TaskValidationError
from shikigami.core.models import (
    BLOCKING_DEPENDENCY_TYPES,
    BlockingTask,
    DependencyEdge,
    DependencyType,
    TaskStatus,
    TaskView,
    parse_dependency_type,
)
from shikigami.storage.sqlmodel_models import DependencyRow, TaskRow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TraversalResult:
    """Nodes reached from a root, in breadth-first discovery order.

    ``tasks`` is only filled by callers that render the tree.
    """

    root_id: str
    visited: list[str] = field(default_factory=list)
    depths: dict[str, int] = field(default_factory=dict)
    edges: dict[str, list[DependencyEdge]] = field(default_factory=dict)
    tasks: dict[str, TaskView] = field(default_factory=dict)

    def children(self, task_id: str) -> list[str]:
        return [edge.depends_on_id for edge in self.edges.get(task_id, [])]


class DependencyGraph:
    """Stores at most one typed edge per ordered task pair."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add_dependency(
        self,
        task_id: str,
        depends_on_id: str,
        dependency_type: DependencyType | str = DependencyType.BLOCKS,
    ) -> DependencyEdge:
        """Create or retype the edge ``task_id -> depends_on_id``.

        Re-adding an existing pair replaces its type instead of failing.
        """

        kind = parse_dependency_type(dependency_type)
        if task_id == depends_on_id:
            raise TaskValidationError("depends_on", "A task cannot depend on itself.")
        for ref in (task_id, depends_on_id):
            if self.session.get(TaskRow, ref) is None:
                raise TaskNotFoundError(ref)

        statement = sqlite_insert(DependencyRow).values(
            task_id=task_id,
            depends_on_id=depends_on_id,
            dependency_type=kind.value,
        )
        self.session.exec(
            statement.on_conflict_do_update(
                index_elements=["task_id", "depends_on_id"],
                set_={"dependency_type": kind.value},
            ),
        )
        logger.debug("Dependency %s -> %s (%s) stored", task_id, depends_on_id, kind.value)
        return DependencyEdge(task_id=task_id, depends_on_id=depends_on_id, dependency_type=kind)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        """Delete the edge if present; returns whether anything was removed."""

        result = self.session.exec(
            sa_delete(DependencyRow).where(
                col(DependencyRow.task_id) == task_id,
                col(DependencyRow.depends_on_id) == depends_on_id,
            ),
        )
        return bool(result.rowcount)

    def get_dependencies(self, task_id: str) -> list[DependencyEdge]:
        """Outgoing edges: what ``task_id`` depends on."""

        rows = self.session.exec(
            select(DependencyRow)
            .where(DependencyRow.task_id == task_id)
            .order_by(col(DependencyRow.depends_on_id).asc())
            .execution_options(populate_existing=True),
        ).all()
        return [_to_edge(row) for row in rows]

    def get_dependents(self, task_id: str) -> list[DependencyEdge]:
        """Incoming edges: who depends on ``task_id``."""

        rows = self.session.exec(
            select(DependencyRow)
            .where(DependencyRow.depends_on_id == task_id)
            .order_by(col(DependencyRow.task_id).asc())
            .execution_options(populate_existing=True),
        ).all()
        return [_to_edge(row) for row in rows]

    def blocking_edges(self, task_id: str) -> list[DependencyEdge]:
        return [edge for edge in self.get_dependencies(task_id) if edge.is_blocking]

    def all_dependencies_satisfied(self, task_id: str) -> bool:
        """True when every blocking target is done and live; vacuously true without edges."""

        return not self.blocking_tasks(task_id)

    def blocking_tasks(self, task_id: str) -> list[BlockingTask]:
        """Blocking targets of ``task_id`` that are not done, or are tombstoned."""

        rows = self.session.exec(
            select(TaskRow, DependencyRow.dependency_type)
            .join(DependencyRow, col(DependencyRow.depends_on_id) == col(TaskRow.id))
            .where(
                DependencyRow.task_id == task_id,
                col(DependencyRow.dependency_type).in_(
                    [kind.value for kind in BLOCKING_DEPENDENCY_TYPES],
                ),
                (col(TaskRow.status) != TaskStatus.DONE.value)
                | col(TaskRow.deleted_at).is_not(None),
            )
            .order_by(col(TaskRow.id).asc())
            .execution_options(populate_existing=True),
        ).all()
        return [
            BlockingTask(
                id=row.id,
                title=row.title,
                status=TaskStatus(row.status),
                dependency_type=DependencyType(kind),
                is_deleted=row.deleted_at is not None,
            )
            for row, kind in rows
        ]

    def traverse(self, root_id: str, *, max_depth: int | None = None) -> TraversalResult:
        """Breadth-first walk over outgoing edges, visiting each node once.

        Nodes at ``max_depth`` are recorded with their edges but not expanded.
        """

        result = TraversalResult(root_id=root_id)
        seen = {root_id}
        queue: deque[tuple[str, int]] = deque([(root_id, 0)])
        while queue:
            node, depth = queue.popleft()
            edges = self.get_dependencies(node)
            result.visited.append(node)
            result.depths[node] = depth
            result.edges[node] = edges
            if max_depth is not None and depth >= max_depth:
                continue
            for edge in edges:
                if edge.depends_on_id in seen:
                    continue
                seen.add(edge.depends_on_id)
                queue.append((edge.depends_on_id, depth + 1))
        return result


def _to_edge(row: DependencyRow) -> DependencyEdge:
    return DependencyEdge(
        task_id=row.task_id,
        depends_on_id=row.depends_on_id,
        dependency_type=DependencyType(row.dependency_type),
    )
