from __future__ import annotations

import logging
import threading
from pathlib import Path

import allure
import pytest

from shikigami.core.errors import (
    AlreadyInProgressError,
    InvalidTransitionError,
    ShikigamiError,
    TaskNotFoundError,
    TaskValidationError,
)
from shikigami.core.models import DependencySpec, LedgerEntryType, TaskCreate, TaskStatus
from shikigami.core.repository import TaskGraphRepository

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Claim State Machine"),
]


def test_second_claim_reports_already_in_progress(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("X")

    first = repository.claim_task(task.id, assignee_id="agent-1")

    assert first.task.status == TaskStatus.IN_PROGRESS
    assert first.task.assignee_id == "agent-1"
    with pytest.raises(AlreadyInProgressError) as error:
        repository.claim_task(task.id, assignee_id="agent-2")
    assert "shiki ready" in str(error.value)
    assert repository.get_task(task.id).assignee_id == "agent-1"


def test_blocked_task_can_be_started_directly_by_default(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])

    result = repository.claim_task(b.id)

    assert result.task.status == TaskStatus.IN_PROGRESS


def test_blocked_start_can_be_disabled(tmp_path: Path) -> None:
    repository = TaskGraphRepository(tmp_path / "strict.db", allow_blocked_start=False)
    repository.init_schema()
    a = repository.create_task(_payload("A"))
    b = repository.create_task(_payload("B", blocks=[a.id]))

    with pytest.raises(InvalidTransitionError) as error:
        repository.claim_task(b.id)

    assert not isinstance(error.value, AlreadyInProgressError)
    assert error.value.status == "blocked"
    repository.close()


@pytest.mark.parametrize("terminal", ["done", "failed"])
def test_terminal_tasks_cannot_be_claimed(
    repository: TaskGraphRepository,
    make_task,
    terminal: str,
) -> None:
    task = make_task("T")
    if terminal == "done":
        repository.finish_task(task.id, "abc123")
    else:
        repository.fail_task(task.id)

    with pytest.raises(InvalidTransitionError) as error:
        repository.claim_task(task.id)
    assert error.value.status == terminal


def test_claim_missing_task_is_not_found(repository: TaskGraphRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.claim_task("sk-nope")


def test_concurrent_claims_have_exactly_one_winner(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Contended")
    workers = 4
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        barrier.wait(timeout=5)
        try:
            repository.claim_task(task.id, assignee_id=worker_id)
            outcome = "ok"
        except AlreadyInProgressError:
            outcome = "already"
        with lock:
            outcomes.append(outcome)

    threads = [
        threading.Thread(target=_claim, args=(f"agent-{index}",)) for index in range(workers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["already"] * (workers - 1) + ["ok"]
    claimed = repository.get_task(task.id)
    assert claimed.status == TaskStatus.IN_PROGRESS
    assert claimed.assignee_id is not None


@pytest.mark.parametrize("output_ref", ["", "   "])
def test_finish_requires_output_reference(
    repository: TaskGraphRepository,
    make_task,
    output_ref: str,
) -> None:
    task = make_task("T")
    repository.claim_task(task.id)

    with pytest.raises(TaskValidationError) as error:
        repository.finish_task(task.id, output_ref)

    assert error.value.field == "output_ref"
    assert repository.get_task(task.id).status == TaskStatus.IN_PROGRESS


def test_finish_with_handoff_feeds_next_workers_context(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("Schema")
    b = make_task("API", blocks=[a.id])
    repository.claim_task(a.id, assignee_id="agent-1")
    repository.finish_task(a.id, "abc123", handoff="Tables live in storage/models.py")
    repository.append_ledger(b.id, LedgerEntryType.LEARNING, "Tests need tmp dirs")

    result = repository.claim_task(b.id, assignee_id="agent-2")

    assert [item.content for item in result.context.handoffs] == [
        "Tables live in storage/models.py",
    ]
    assert result.context.handoffs[0].source_task_id == a.id
    assert result.context.handoffs[0].source_task_title == "Schema"
    assert result.context.handoffs[0].author_id == "agent-1"
    assert [entry.content for entry in result.context.learnings] == ["Tests need tmp dirs"]


def test_fail_records_reason_as_handoff(repository: TaskGraphRepository, make_task) -> None:
    task = make_task("Flaky")
    repository.claim_task(task.id, assignee_id="agent-1")

    failed = repository.fail_task(task.id, reason="Timeout talking to API")

    assert failed.status == TaskStatus.FAILED
    assert failed.failure_context == "Timeout talking to API"
    entries = repository.get_ledger(task.id, entry_type="handoff")
    assert [entry.content for entry in entries] == ["Timeout talking to API"]
    assert entries[0].author_id == "agent-1"


def test_retry_resets_failed_task_and_counts_attempts(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Flaky")
    repository.claim_task(task.id, assignee_id="agent-1")
    repository.fail_task(task.id)

    retried = repository.retry_task(task.id)

    assert retried.status == TaskStatus.READY
    assert retried.retry_count == 1
    assert retried.assignee_id is None
    with pytest.raises(InvalidTransitionError, match="Only failed tasks"):
        repository.retry_task(task.id)


def test_retry_lands_in_blocked_when_blocker_regressed(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])
    repository.finish_task(a.id, "abc123")
    repository.fail_task(b.id)
    repository.update_status(a.id, TaskStatus.IN_REVIEW)

    retried = repository.retry_task(b.id)

    assert retried.status == TaskStatus.BLOCKED
    assert retried.retry_count == 1


def test_update_status_to_ready_is_refused_while_blocked(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])

    with pytest.raises(InvalidTransitionError, match="unfinished blocking dependencies"):
        repository.update_status(b.id, "ready")


def test_update_status_to_done_promotes_dependents(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])

    repository.update_status(a.id, "done")

    assert repository.get_task(b.id).status == TaskStatus.READY


def test_update_status_to_in_progress_goes_through_claim(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("T")
    repository.update_status(task.id, TaskStatus.IN_PROGRESS)

    with pytest.raises(AlreadyInProgressError):
        repository.update_status(task.id, TaskStatus.IN_PROGRESS)


def test_claim_writes_status_and_assignee_audit_entries(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Audited")

    repository.claim_task(task.id, assignee_id="agent-1", actor="agent-1")

    fields = {entry.field: entry for entry in repository.get_audit(task.id)}
    assert fields["status"].old_value == "ready"
    assert fields["status"].new_value == "in_progress"
    assert fields["assignee_id"].new_value == "agent-1"


def test_business_rule_failures_share_a_base_class(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("T")
    repository.claim_task(task.id)

    with pytest.raises(ShikigamiError):
        repository.claim_task(task.id)


def _payload(title: str, *, blocks: list[str] | None = None) -> TaskCreate:
    return TaskCreate(
        title=title,
        description=f"{title} description",
        dependencies=[DependencySpec(depends_on=ref) for ref in blocks or []],
    )


def test_retried_task_start_context_includes_its_own_failure_notes(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    task = make_task("Migrate")
    repository.claim_task(task.id, assignee_id="agent-1")
    repository.fail_task(task.id, reason="Migrations need a lock on the users table")
    repository.retry_task(task.id)

    result = repository.claim_task(task.id, assignee_id="agent-2")

    assert result.context.handoffs == []
    assert [entry.content for entry in result.context.task_handoffs] == [
        "Migrations need a lock on the users table",
    ]
    assert result.context.task_handoffs[0].author_id == "agent-1"


def test_reopening_a_done_task_moves_ready_dependents_back_to_blocked(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])
    repository.finish_task(a.id, "abc123")
    assert repository.get_task(b.id).status == TaskStatus.READY

    repository.update_status(a.id, TaskStatus.IN_REVIEW)

    assert repository.get_task(b.id).status == TaskStatus.BLOCKED
    assert repository.list_ready() == []


def test_update_task_rolls_back_every_field_when_status_is_refused(
    repository: TaskGraphRepository,
    make_task,
) -> None:
    a = make_task("A")
    b = make_task("B", blocks=[a.id])

    with pytest.raises(InvalidTransitionError):
        repository.update_task(b.id, priority=9, assignee_id="agent-1", status="ready")

    unchanged = repository.get_task(b.id)
    assert unchanged.priority == 0
    assert unchanged.assignee_id is None
    assert unchanged.status == TaskStatus.BLOCKED


def test_retry_log_names_the_plain_status(
    repository: TaskGraphRepository,
    make_task,
    caplog: pytest.LogCaptureFixture,
) -> None:
    task = make_task("Flaky")
    repository.fail_task(task.id)

    with caplog.at_level(logging.INFO, logger="shikigami.core.claims"):
        repository.retry_task(task.id)

    assert f"Task {task.id} reset for retry #1 (ready)" in caplog.messages
