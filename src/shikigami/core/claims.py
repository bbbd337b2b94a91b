"""Task lifecycle transitions, including the atomic single-claim guarantee."""

from __future__ import annotations

import logging

from shikigami.core.errors import (
    AlreadyInProgressError,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskValidationError,
)
from shikigami.core.graph import DependencyGraph
from shikigami.core.history import HistoryLog
from shikigami.core.models import (
    CLAIMABLE_STATUSES,
    ClaimResult,
    FinishResult,
    LedgerEntryType,
    TaskStatus,
    TaskView,
    parse_status,
)
from shikigami.core.readiness import ReadinessResolver
from shikigami.core.task_store import TaskStore

logger = logging.getLogger(__name__)


class ClaimStateMachine:
    """Enforces ``blocked -> ready -> in_progress -> {in_review, done, failed}``.

    Entering ``in_progress`` is a compare-and-swap on the status column; the
    loser of a race gets ``AlreadyInProgressError`` instead of a generic failure.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        graph: DependencyGraph,
        readiness: ReadinessResolver,
        history: HistoryLog,
        allow_blocked_start: bool = True,
    ) -> None:
        self.tasks = tasks
        self.graph = graph
        self.readiness = readiness
        self.history = history
        self.allow_blocked_start = allow_blocked_start

    def claim(
        self,
        task_id: str,
        *,
        assignee_id: str | None = None,
        actor: str | None = None,
    ) -> ClaimResult:
        expected = (
            CLAIMABLE_STATUSES if self.allow_blocked_start else frozenset({TaskStatus.READY})
        )
        claimed = self.tasks.compare_and_set_status(
            task_id,
            expected=expected,
            new_status=TaskStatus.IN_PROGRESS,
            assignee_id=assignee_id,
            actor=actor,
        )
        if not claimed:
            current = self.tasks.get(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            if current.status == TaskStatus.IN_PROGRESS:
                logger.warning(
                    "Claim race lost for %s (held by %s)",
                    task_id,
                    current.assignee_id or "-",
                )
                raise AlreadyInProgressError(task_id)
            raise InvalidTransitionError(
                task_id,
                current.status.value,
                f"Task {task_id} cannot be started from status '{current.status.value}'.",
            )

        task = self.tasks.require(task_id)
        logger.info("Task %s claimed by %s", task_id, assignee_id or "-")
        return ClaimResult(task=task, context=self.history.start_context(task_id))

    def finish(
        self,
        task_id: str,
        output_ref: str,
        *,
        handoff: str | None = None,
        actor: str | None = None,
    ) -> FinishResult:
        """Mark done, record the output reference and report newly unblocked dependents."""

        if output_ref is None or not output_ref.strip():
            raise TaskValidationError("output_ref", "Output reference must not be empty.")
        current = self.tasks.require(task_id)

        pending_before = self._pending_dependents(task_id)
        self.tasks.update_status(task_id, TaskStatus.DONE, actor=actor)
        self.tasks.record_outcome(task_id, output_ref.strip(), actor=actor)
        if handoff:
            self.history.append_ledger(
                task_id=task_id,
                entry_type=LedgerEntryType.HANDOFF,
                content=handoff,
                author_id=current.assignee_id or actor,
            )
        self.readiness.promote_eligible_tasks(actor=actor)

        unblocked = [
            task
            for task in (self.tasks.get(dependent_id) for dependent_id in pending_before)
            if task is not None and task.status == TaskStatus.READY
        ]
        logger.info("Task %s finished; %d dependent(s) unblocked", task_id, len(unblocked))
        return FinishResult(task=self.tasks.require(task_id), unblocked=unblocked)

    def fail(
        self,
        task_id: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        current = self.tasks.require(task_id)
        self.tasks.update_status(task_id, TaskStatus.FAILED, actor=actor)
        if reason:
            self.tasks.record_failure(task_id, reason, actor=actor)
            self.history.append_ledger(
                task_id=task_id,
                entry_type=LedgerEntryType.HANDOFF,
                content=reason,
                author_id=current.assignee_id or actor,
            )
        logger.info("Task %s failed", task_id)
        return self.tasks.require(task_id)

    def retry(self, task_id: str, *, actor: str | None = None) -> TaskView:
        """Reset a failed task for another attempt.

        The task goes back through readiness, so it lands in ``blocked`` if a
        blocking dependency is no longer satisfied.
        """

        reset = self.tasks.compare_and_set_status(
            task_id,
            expected=(TaskStatus.FAILED,),
            new_status=TaskStatus.BLOCKED,
            assignee_id=None,
            actor=actor,
        )
        if not reset:
            current = self.tasks.require(task_id)
            raise InvalidTransitionError(
                task_id,
                current.status.value,
                f"Only failed tasks can be retried; {task_id} is '{current.status.value}'.",
            )
        self.tasks.increment_retry(task_id, actor=actor)
        self.readiness.promote_eligible_tasks(actor=actor)
        task = self.tasks.require(task_id)
        logger.info(
            "Task %s reset for retry #%d (%s)",
            task_id,
            task.retry_count,
            task.status.value,
        )
        return task

    def transition(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        actor: str | None = None,
    ) -> TaskView:
        """Generic status change with the same guards as the dedicated operations."""

        target = parse_status(status)
        if target == TaskStatus.IN_PROGRESS:
            current = self.tasks.require(task_id)
            return self.claim(task_id, assignee_id=current.assignee_id, actor=actor).task
        if target == TaskStatus.READY and not self.graph.all_dependencies_satisfied(task_id):
            current = self.tasks.require(task_id)
            raise InvalidTransitionError(
                task_id,
                current.status.value,
                f"Task {task_id} still has unfinished blocking dependencies.",
            )

        previous = self.tasks.require(task_id).status
        self.tasks.update_status(task_id, target, actor=actor)
        if previous == TaskStatus.DONE and target != TaskStatus.DONE:
            self.readiness.demote_unsatisfied(self._dependent_ids(task_id), actor=actor)
        if target in (TaskStatus.DONE, TaskStatus.BLOCKED):
            self.readiness.promote_eligible_tasks(actor=actor)
        return self.tasks.require(task_id)

    def _dependent_ids(self, task_id: str) -> list[str]:
        return [edge.task_id for edge in self.graph.get_dependents(task_id) if edge.is_blocking]

    def _pending_dependents(self, task_id: str) -> list[str]:
        pending: list[str] = []
        for edge in self.graph.get_dependents(task_id):
            if not edge.is_blocking:
                continue
            dependent = self.tasks.get(edge.task_id)
            if dependent is not None and dependent.status == TaskStatus.BLOCKED:
                pending.append(dependent.id)
        return pending
