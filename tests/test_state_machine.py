from __future__ import annotations

import allure
import pytest

from taskforge.orchestrator.errors import ErrorCategory, InvalidTransitionError
from taskforge.orchestrator.models import TaskStatus
from taskforge.orchestrator.state_machine import TRANSITIONS, can_transition, validate_transition

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Transition Table"),
]


def test_every_status_has_a_row_and_done_is_terminal() -> None:
    assert set(TRANSITIONS) == set(TaskStatus)
    assert TRANSITIONS[TaskStatus.DONE] == frozenset()


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.TODO, TaskStatus.ASSIGNED),
        (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW),
        (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
        (TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS),
        (TaskStatus.REVIEW, TaskStatus.DONE),
        (TaskStatus.REVIEW, TaskStatus.TODO),
    ],
)
def test_allowed_transitions(current: TaskStatus, target: TaskStatus) -> None:
    assert can_transition(current, target)
    validate_transition("T1", current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.TODO, TaskStatus.IN_PROGRESS),
        (TaskStatus.TODO, TaskStatus.DONE),
        (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
        (TaskStatus.BLOCKED, TaskStatus.REVIEW),
        (TaskStatus.DONE, TaskStatus.TODO),
    ],
)
def test_rejected_transitions_are_conflicts(current: TaskStatus, target: TaskStatus) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as error:
        validate_transition("T1", current, target)
    assert error.value.category is ErrorCategory.CONFLICT
    assert error.value.current is current
    assert error.value.target is target
