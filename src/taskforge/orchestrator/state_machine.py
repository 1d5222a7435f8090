"""Task status transition table."""

from __future__ import annotations

from taskforge.orchestrator.errors import InvalidTransitionError
from taskforge.orchestrator.models import TaskStatus

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.ASSIGNED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.REVIEW: frozenset({TaskStatus.DONE, TaskStatus.TODO}),
    TaskStatus.DONE: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS[current]


def validate_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    """Raise when ``current -> target`` is not in the table."""

    if not can_transition(current, target):
        raise InvalidTransitionError(task_id, current, target)
