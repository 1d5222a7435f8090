"""Typed failures raised by the orchestration engine."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskforge.orchestrator.models import ReservationView, TaskStatus


class ErrorCategory(str, Enum):
    """Coarse failure classes callers branch on (retry vs. abort vs. fix input)."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    EXTERNAL_TOOL = "external_tool"
    NOT_FOUND = "not_found"


class OrchestratorError(RuntimeError):
    """Base error carrying a machine-readable category."""

    category: ErrorCategory = ErrorCategory.VALIDATION


class ValidationError(OrchestratorError):
    """Malformed input rejected before any side effect."""

    category = ErrorCategory.VALIDATION


class NotFoundError(OrchestratorError):
    category = ErrorCategory.NOT_FOUND


class ConflictError(OrchestratorError):
    """Resource held by someone else or action attempted in the wrong state."""

    category = ErrorCategory.CONFLICT


class ReservationConflictError(ConflictError):
    def __init__(self, path: str, holder: ReservationView | None) -> None:
        owner = holder.owner if holder is not None else "another owner"
        super().__init__(f"Path {path!r} is reserved by {owner}.")
        self.path = path
        self.holder = holder


class InvalidTransitionError(ConflictError):
    def __init__(self, task_id: str, current: TaskStatus, target: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id}: transition {current.value} -> {target.value} is not allowed.",
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class NotInReviewError(ConflictError):
    def __init__(self, task_id: str, current: TaskStatus) -> None:
        super().__init__(f"Task {task_id} is not in review (status={current.value}).")
        self.task_id = task_id
        self.current = current


class NotInProgressError(ConflictError):
    def __init__(self, task_id: str, current: TaskStatus) -> None:
        super().__init__(f"Task {task_id} is not in progress (status={current.value}).")
        self.task_id = task_id
        self.current = current


class ScopeOverrideRequiredError(ConflictError):
    """Approve attempted while changes fall outside the declared scope."""

    def __init__(self, task_id: str, out_of_scope: Sequence[str]) -> None:
        listed = ", ".join(out_of_scope) if out_of_scope else "-"
        super().__init__(
            f"Task {task_id} touches files outside its declared scope ({listed}); "
            "accept the override, revert the files, or explain before approving.",
        )
        self.task_id = task_id
        self.out_of_scope = list(out_of_scope)


class ExternalToolError(OrchestratorError):
    """Non-zero exit or missing binary; the tool's own message is kept intact."""

    category = ErrorCategory.EXTERNAL_TOOL

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command)
        self.exit_code = exit_code
        self.output = output
