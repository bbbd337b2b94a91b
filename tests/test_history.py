from __future__ import annotations

import allure
import pytest

from shikigami.core.errors import TaskNotFoundError, TaskValidationError
from shikigami.core.models import AuditOperation, LedgerEntryType
from shikigami.core.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("History"),
]


def test_audit_is_newest_first_with_one_entry_per_field(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Audited", actor="lead")
    repository.update_priority(task.id, 2, actor="lead")
    repository.claim_task(task.id, assignee_id="agent-1", actor="agent-1")

    audit = repository.get_audit(task.id)

    assert audit[-1].operation == AuditOperation.CREATE
    assert [entry.field for entry in audit[:2]] == ["assignee_id", "status"]
    assert audit[2].field == "priority"
    assert audit[2].old_value == "0"
    assert audit[2].new_value == "2"
    assert [entry.field for entry in repository.get_audit(task.id, limit=1)] == ["assignee_id"]


def test_ledger_is_oldest_first_and_filterable(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Noted")
    repository.append_ledger(task.id, "learning", "first", author_id="a")
    repository.append_ledger(task.id, LedgerEntryType.HANDOFF, "second", author_id="b")
    repository.append_ledger(task.id, "learning", "third")

    entries = repository.get_ledger(task.id)

    assert [entry.content for entry in entries] == ["first", "second", "third"]
    assert entries[0].id.startswith("sk-")
    learnings = repository.get_ledger(task.id, entry_type="learning")
    assert [entry.content for entry in learnings] == ["first", "third"]


def test_ledger_content_is_stored_verbatim(repository: TaskGraphRepository, make_task) -> None:
    task = make_task("Verbatim")
    content = "  line one\n\n\tline two  " + "x" * 10_000

    entry = repository.append_ledger(task.id, "learning", content)

    assert entry.content == content
    assert repository.get_ledger(task.id)[0].content == content


def test_ledger_rejects_unknown_type_and_unknown_task(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Strict")

    with pytest.raises(TaskValidationError, match="Valid values are: handoff, learning"):
        repository.append_ledger(task.id, "note", "content")
    with pytest.raises(TaskNotFoundError):
        repository.append_ledger("sk-missing", "learning", "content")


def test_predecessor_handoffs_only_come_from_done_blocking_targets(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    done = make_task("done")
    unfinished = make_task("unfinished")
    informational = make_task("informational")
    repository.append_ledger(unfinished.id, "handoff", "not yet")
    repository.append_ledger(informational.id, "handoff", "fyi")
    repository.append_ledger(done.id, "learning", "not a handoff")
    repository.finish_task(done.id, "abc123", handoff="done handoff")
    repository.finish_task(informational.id, "def456")
    target = make_task("target", blocks=[done.id, unfinished.id], related=[informational.id])

    handoffs = repository.predecessor_handoffs(target.id)

    assert [(item.source_task_id, item.content) for item in handoffs] == [
        (done.id, "done handoff"),
    ]
    assert handoffs[0].source_task_title == "done"
