"""Typed, recoverable failures raised by the task graph core."""

from __future__ import annotations

from collections.abc import Iterable


class ShikigamiError(Exception):
    """Base class for expected business-rule failures."""


class TaskNotFoundError(ShikigamiError, LookupError):
    """Identifier (exact or prefix) does not resolve to exactly one live task."""

    def __init__(self, task_id: str, *, candidates: Iterable[str] = ()) -> None:
        self.task_id = task_id
        self.candidates = tuple(candidates)
        if self.candidates:
            message = (
                f"Ambiguous task id: {task_id!r} matches {', '.join(self.candidates)}"
            )
        else:
            message = f"Task not found: {task_id}"
        super().__init__(message)

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


class TaskValidationError(ShikigamiError, ValueError):
    """Malformed input: empty text, unknown status/type, empty output reference."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class InvalidTransitionError(ShikigamiError):
    """Transition is not legal from the task's current status."""

    def __init__(self, task_id: str, status: str, message: str | None = None) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(
            message or f"Task {task_id} cannot make this transition from status '{status}'.",
        )


class AlreadyInProgressError(InvalidTransitionError):
    """Claim race lost: another worker already moved the task into active work."""

    def __init__(self, task_id: str) -> None:
        super().__init__(
            task_id,
            "in_progress",
            f"Task '{task_id}' is already being worked on. "
            "Use 'shiki ready' to find available tasks.",
        )


class AlreadyDeletedError(ShikigamiError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task already deleted: {task_id}")


def invalid_choice(field: str, value: str, allowed: Iterable[str]) -> TaskValidationError:
    """Build the validation error used for closed-set string inputs."""

    return TaskValidationError(
        field,
        f"Invalid {field}: '{value}'. Valid values are: {', '.join(allowed)}",
    )
