"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from shikigami.core.models import DependencySpec, DependencyType, TaskCreate, TaskView
from shikigami.core.repository import TaskGraphRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskGraphRepository]:
    repo = TaskGraphRepository(tmp_path / "shiki.db", busy_timeout_ms=5000)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_task(repository: TaskGraphRepository) -> Callable[..., TaskView]:
    """Create a task, optionally depending on others: ``make_task("B", blocks=[a.id])``."""

    def _make(
        title: str,
        *,
        priority: int = 0,
        blocks: tuple[str, ...] | list[str] = (),
        related: tuple[str, ...] | list[str] = (),
        actor: str | None = None,
    ) -> TaskView:
        dependencies = [DependencySpec(depends_on=ref) for ref in blocks]
        dependencies.extend(
            DependencySpec(depends_on=ref, dependency_type=DependencyType.RELATED)
            for ref in related
        )
        return repository.create_task(
            TaskCreate(
                title=title,
                description=f"{title} description",
                priority=priority,
                dependencies=dependencies,
            ),
            actor=actor,
        )

    return _make
