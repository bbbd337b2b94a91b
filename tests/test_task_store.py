from __future__ import annotations

import allure
import pytest

from shikigami.core.errors import AlreadyDeletedError, TaskNotFoundError, TaskValidationError
from shikigami.core.models import TaskCreate, TaskStatus
from shikigami.core.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Task Store"),
]


def test_create_task_without_dependencies_is_immediately_ready(
    repository: TaskGraphRepository,
) -> None:
    task = repository.create_task(TaskCreate(title="Write parser", description="Tokens first"))

    assert task.id.startswith("sk-")
    assert task.status == TaskStatus.READY
    assert task.priority == 0
    assert task.retry_count == 0
    assert task.created_at.tzinfo is not None
    assert task.deleted_at is None


@pytest.mark.parametrize(
    ("title", "description", "field"),
    [
        ("", "body", "title"),
        ("   ", "body", "title"),
        ("Title", "", "description"),
    ],
)
def test_create_task_rejects_empty_title_or_description(
    repository: TaskGraphRepository,
    title: str,
    description: str,
    field: str,
) -> None:
    with pytest.raises(TaskValidationError) as error:
        repository.create_task(TaskCreate(title=title, description=description))

    assert error.value.field == field
    assert repository.list_tasks(include_deleted=True) == []


def test_find_by_prefix_prefers_exact_match_and_rejects_ambiguity(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Only task")

    assert repository.find_task(task.id) == task
    assert repository.find_task(task.id[3:5]) == task
    assert repository.find_task(task.id[:5]) == task
    assert repository.find_task("zzzzzzz") is None

    other = make_task("Second task")
    common = ""
    for left, right in zip(task.id, other.id, strict=False):
        if left != right:
            break
        common += left
    assert repository.find_task(common) is None
    candidates = {found.id for found in repository.find_tasks_by_prefix(common)}
    assert candidates == {task.id, other.id}

    with pytest.raises(TaskNotFoundError) as error:
        repository.resolve_task(common)
    assert error.value.ambiguous
    assert set(error.value.candidates) == {task.id, other.id}


def test_resolve_task_reports_missing_identifier(repository: TaskGraphRepository) -> None:
    with pytest.raises(TaskNotFoundError, match="Task not found: sk-none"):
        repository.resolve_task("sk-none")


def test_lists_order_by_priority_then_creation(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    low = make_task("low", priority=-1)
    first = make_task("first", priority=5)
    second = make_task("second", priority=5)
    middle = make_task("middle", priority=1)

    ordered = [task.id for task in repository.list_tasks()]

    assert ordered == [first.id, second.id, middle.id, low.id]


def test_active_view_excludes_done_and_failed(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    done = make_task("done")
    failed = make_task("failed")
    open_task = make_task("open")
    repository.finish_task(done.id, "abc123")
    repository.fail_task(failed.id)

    assert [task.id for task in repository.list_active()] == [open_task.id]
    assert [task.id for task in repository.list_tasks(status=TaskStatus.DONE)] == [done.id]
    assert [task.id for task in repository.list_tasks(status="failed")] == [failed.id]


def test_invalid_status_lists_legal_values(repository: TaskGraphRepository) -> None:
    with pytest.raises(TaskValidationError, match="Valid values are: blocked, ready"):
        repository.list_tasks(status="paused")


def test_soft_delete_hides_task_and_restore_brings_it_back(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Removable")

    removed = repository.remove_task(task.id, reason="duplicate", deleted_by="agent-1")

    assert removed.deleted_at is not None
    assert removed.delete_reason == "duplicate"
    assert removed.deleted_by == "agent-1"
    assert repository.get_task(task.id) is None
    assert repository.get_task(task.id, include_deleted=True) is not None
    assert repository.list_tasks() == []
    assert [item.id for item in repository.list_deleted()] == [task.id]

    with pytest.raises(AlreadyDeletedError):
        repository.remove_task(task.id)

    restored = repository.restore_task(task.id)

    assert restored.deleted_at is None
    assert restored.deleted_by is None
    assert restored.delete_reason is None
    assert restored.title == task.title
    assert restored.status == task.status
    assert restored.created_at == task.created_at
    assert repository.get_task(task.id) is not None


def test_hard_delete_cascades_edges_and_ledger_but_keeps_audit(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    base = make_task("base", actor="agent")
    dependent = make_task("dependent", blocks=[base.id])
    repository.append_ledger(base.id, "learning", "remember this")

    repository.hard_delete_task(base.id, actor="agent")

    assert repository.get_task(base.id, include_deleted=True) is None
    assert repository.get_dependencies(dependent.id) == []
    audit = repository.get_audit(base.id)
    assert [entry.field for entry in audit] == ["hard_delete", "status", None]
    assert repository.get_task(dependent.id).status == TaskStatus.READY


def test_single_field_mutations_bump_updated_at_and_audit(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Mutable")

    updated = repository.update_assignee(task.id, "agent-7", actor="lead")

    assert updated.assignee_id == "agent-7"
    assert updated.updated_at >= task.updated_at
    audit = repository.get_audit(task.id)
    assert len(audit) == 1
    assert audit[0].field == "assignee_id"
    assert audit[0].old_value is None
    assert audit[0].new_value == "agent-7"
    assert audit[0].actor == "lead"


def test_mutations_without_actor_write_no_audit(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Quiet")

    repository.update_priority(task.id, 3)

    assert repository.get_audit(task.id) == []


def test_document_path_uses_configured_docs_dir(tmp_path) -> None:
    repository = TaskGraphRepository(
        tmp_path / "docs.db",
        docs_dir="specs",
        doc_extension="txt",
    )
    repository.init_schema()
    task = repository.create_task(
        TaskCreate(title="Doc task", description="d", external_doc_id="prd-auth"),
    )

    assert repository.document_path(task) == "specs/prd-auth.txt"
    assert [item.id for item in repository.list_by_external_doc("prd-auth")] == [task.id]
    plain = repository.create_task(TaskCreate(title="Plain", description="d"))
    assert repository.document_path(plain) is None
    repository.close()
