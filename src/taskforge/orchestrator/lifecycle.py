"""Task lifecycle: start, stop, resume, review hand-off, approve and reject."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskforge.config import Settings
from taskforge.orchestrator.errors import (
    InvalidTransitionError,
    NotInProgressError,
    NotInReviewError,
    ValidationError,
)
from taskforge.orchestrator.identifiers import (
    branch_for_task,
    session_id_for_task,
    validate_task_id,
)
from taskforge.orchestrator.models import (
    CleanupReport,
    ReconcileOutcome,
    SessionState,
    SessionView,
    StartedTask,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from taskforge.orchestrator.repository import OrchestratorRepository
from taskforge.orchestrator.reservations import ReservationManager
from taskforge.orchestrator.runner import ProcessRunner, SubprocessRunner
from taskforge.orchestrator.session import SessionManager, read_log_from_offset, validate_log_path
from taskforge.orchestrator.vcs import GitClient, validate_branch_name
from taskforge.orchestrator.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

_STATUS_MARKER_RE = re.compile(
    r"^\s*(?:TASKFORGE_)?STATUS\s*[:=]\s*(working|paused|blocked|done)\b",
    re.IGNORECASE,
)
_MARKER_STATES = {
    "working": SessionState.WORKING,
    "paused": SessionState.PAUSED,
    "blocked": SessionState.PAUSED,
    "done": SessionState.DONE,
}
_STARTABLE = frozenset({TaskStatus.TODO, TaskStatus.ASSIGNED, TaskStatus.BLOCKED})
_QUICK_TITLE_MAX = 120


class Approver(Protocol):
    """Resolves and merges a task branch into the base branch."""

    def find_branch(self, task_id: str) -> str: ...

    def merge(self, branch: str) -> None: ...


class GitApprover:
    def __init__(self, git: GitClient, *, base_branch: str | None, branch_prefix: str) -> None:
        self.git = git
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix

    def find_branch(self, task_id: str) -> str:
        return self.git.find_branch_for_task(task_id, prefix=self.branch_prefix)

    def merge(self, branch: str) -> None:
        self.git.merge(branch, into=self.base_branch)


@dataclass(slots=True)
class ProjectLayout:
    """Filesystem and naming conventions for one project."""

    repo_root: Path
    workspaces_root: Path
    sessions_dir: Path
    base_branch: str | None = None
    branch_prefix: str = "feature/"
    session_prefix: str = "tf-"
    task_id_prefix: str = "TASK"

    @classmethod
    def from_settings(cls, settings: Settings) -> ProjectLayout:
        return cls(
            repo_root=settings.project_root,
            workspaces_root=settings.workspace.workspaces_root,
            sessions_dir=settings.workspace.sessions_dir,
            base_branch=settings.workspace.base_branch,
            branch_prefix=settings.workspace.branch_prefix,
            session_prefix=settings.workspace.session_prefix,
            task_id_prefix=settings.intake.task_id_prefix,
        )

    def branch_for(self, task_id: str) -> str:
        return branch_for_task(task_id, prefix=self.branch_prefix)

    def session_id_for(self, task_id: str) -> str:
        return session_id_for_task(task_id, prefix=self.session_prefix)

    def log_path_for(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.log"


class TaskLifecycleOrchestrator:
    """Sequences worktree, session and store changes for operator intents.

    Multi-step flows are not rolled back: when a later step fails, the
    earlier side effects (worktree, session) stay in place and the error
    propagates unchanged.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: OrchestratorRepository,
        *,
        layout: ProjectLayout,
        runner: ProcessRunner | None = None,
        workspaces: WorkspaceManager | None = None,
        sessions: SessionManager | None = None,
        approver: Approver | None = None,
        reservations: ReservationManager | None = None,
    ) -> None:
        runner = runner or SubprocessRunner()
        self.repository = repository
        self.layout = layout
        self.git = GitClient(layout.repo_root, runner=runner)
        self.workspaces = workspaces or WorkspaceManager(layout.workspaces_root, runner=runner)
        self.sessions = sessions or SessionManager(runner)
        self.approver = approver or GitApprover(
            self.git,
            base_branch=layout.base_branch,
            branch_prefix=layout.branch_prefix,
        )
        self.reservations = reservations or ReservationManager(repository.engine)

    def create_task(self, payload: TaskCreate) -> TaskView:
        if payload.task_id is None:
            payload.task_id = self.repository.next_task_id(self.layout.task_id_prefix)
        validate_task_id(payload.task_id)
        task = self.repository.create_task(payload)
        logger.info("Created task %s (%s)", task.task_id, task.status.value)
        return task

    def quick_task(self, text: str, *, assignee: str | None = None) -> TaskView:
        """Create an assigned task from free text: first line is the title."""

        lines = [line.rstrip() for line in text.strip().splitlines()]
        if not lines or not lines[0].strip():
            raise ValidationError("Quick task text must not be empty.")
        title = lines[0].strip()[:_QUICK_TITLE_MAX]
        summary = "\n".join(lines[1:]).strip()
        return self.create_task(
            TaskCreate(
                title=title,
                status=TaskStatus.ASSIGNED,
                summary=summary,
                assignee=assignee,
            ),
        )

    def assign_task(self, task_id: str, assignee: str) -> TaskView:
        validate_task_id(task_id)
        if not assignee.strip():
            raise ValidationError("Assignee must not be empty.")
        task = self.repository.get_task(task_id)
        if task.status is TaskStatus.TODO:
            return self.repository.transition(
                task_id,
                target=TaskStatus.ASSIGNED,
                event_type="assigned",
                details={"assignee": assignee},
                values={"assignee": assignee},
            )
        return self.repository.set_assignee(task_id, assignee)

    def start_task(self, task_id: str) -> StartedTask:
        validate_task_id(task_id)
        branch = self.layout.branch_for(task_id)
        session_id = self.layout.session_id_for(task_id)
        worktree = self.workspaces.path_for(task_id)
        log_path = self.layout.log_path_for(session_id)
        validate_log_path(str(log_path))
        validate_branch_name(branch)

        task = self.repository.get_task(task_id)
        if task.status not in _STARTABLE:
            raise InvalidTransitionError(task_id, task.status, TaskStatus.IN_PROGRESS)
        if task.status is TaskStatus.TODO:
            self.repository.transition(
                task_id,
                target=TaskStatus.ASSIGNED,
                event_type="auto_assigned",
                details={"reason": "start"},
            )

        self.workspaces.create(self.layout.repo_root, worktree, branch)
        log_offset = log_path.stat().st_size if log_path.exists() else 0
        if self.sessions.exists(session_id):
            logger.info("Session %s still running; reattaching", session_id)
        else:
            self.sessions.start(session_id, worktree, log_path)
        started, session = self.repository.record_start(
            task_id,
            session_id=session_id,
            workdir=str(worktree),
            log_path=str(log_path),
            branch=branch,
            log_offset=log_offset,
        )
        logger.info("Task %s started in %s on %s", task_id, worktree, branch)
        return StartedTask(
            task=started,
            session=session,
            branch=branch,
            worktree_path=str(worktree),
        )

    def resume_task(self, task_id: str) -> StartedTask:
        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.status is not TaskStatus.BLOCKED:
            raise InvalidTransitionError(task_id, task.status, TaskStatus.IN_PROGRESS)
        return self.start_task(task_id)

    def stop_task(self, task_id: str) -> TaskView:
        """Stop the session (idempotent) and block the task."""

        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.status not in {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}:
            raise NotInProgressError(task_id, task.status)
        session_id = self._resolve_session_id(task_id)
        self.sessions.stop(session_id)
        stopped = self.repository.record_stop(task_id, session_id=session_id)
        logger.info("Task %s stopped (session %s)", task_id, session_id)
        return stopped

    def submit_for_review(self, task_id: str) -> TaskView:
        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.status is not TaskStatus.IN_PROGRESS:
            raise NotInProgressError(task_id, task.status)
        submitted = self.repository.submit_for_review(task_id, details={"source": "operator"})
        logger.info("Task %s submitted for review", task_id)
        return submitted

    def approve_task(self, task_id: str, branch: str | None = None) -> TaskView:
        """Merge the task branch and mark it done; only legal from review."""

        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.status is not TaskStatus.REVIEW:
            raise NotInReviewError(task_id, task.status)
        resolved = validate_branch_name(branch or self.approver.find_branch(task_id))

        self.approver.merge(resolved)
        done = self.repository.close_review(
            task_id,
            target=TaskStatus.DONE,
            event_type="approved",
            details={"branch": resolved},
        )
        self.reservations.release_all(self._reservation_owners(task_id))
        logger.info("Task %s approved and merged from %s", task_id, resolved)
        return done

    def reject_task(
        self,
        task_id: str,
        feedback: str,
        *,
        feedback_recorded: bool = False,
    ) -> TaskView:
        """Send a reviewed task back to todo; feedback is mandatory."""

        validate_task_id(task_id)
        text = feedback.strip()
        if not text:
            raise ValidationError("Feedback is required to reject a task.")
        task = self.repository.get_task(task_id)
        if task.status is not TaskStatus.REVIEW:
            raise NotInReviewError(task_id, task.status)

        if not feedback_recorded:
            self.repository.add_task_event(
                task_id,
                event_type="review_feedback",
                details={"feedback": text},
            )
        rejected = self.repository.close_review(
            task_id,
            target=TaskStatus.TODO,
            event_type="rejected",
            details={"feedback": text},
        )
        self.reservations.release_all(self._reservation_owners(task_id))
        logger.info("Task %s rejected back to todo", task_id)
        return rejected

    def reconcile(self, task_id: str | None = None) -> list[ReconcileOutcome]:
        """Poll session logs for status markers and fold them into task state."""

        if task_id is not None:
            validate_task_id(task_id)
            found = self.repository.find_session_by_task(task_id)
            sessions = [found] if found is not None else []
        else:
            sessions = self.repository.list_sessions(
                states=(SessionState.WORKING, SessionState.PAUSED),
            )

        outcomes: list[ReconcileOutcome] = []
        for session in sessions:
            if session.state in {SessionState.STOPPED, SessionState.DONE}:
                continue
            outcomes.append(self._reconcile_session(session))
        return outcomes

    def reserve_touched_files(self, task_id: str) -> list[str]:
        """Reserve files the task's worktree has modified; returns conflicting paths."""

        validate_task_id(task_id)
        task = self.repository.get_task(task_id)
        if task.worktree_path is None or not Path(task.worktree_path).exists():
            return []
        changed = self.git.changed_files(Path(task.worktree_path))
        batch = self.reservations.acquire_many(changed, task_id, reason=f"edited by {task_id}")
        conflicts = [holder.path for holder in batch.conflicts]
        for holder in batch.conflicts:
            logger.warning(
                "Task %s edits %s reserved by %s",
                task_id,
                holder.path,
                holder.owner,
            )
        return conflicts

    def cleanup_report(self) -> CleanupReport:
        """List worktrees and prefixed tmux sessions; nothing is removed.

        A worktree is orphaned when its task is unknown or done. A session is
        orphaned when no stored session row is still working or paused.
        """

        report = CleanupReport()
        root = self.layout.workspaces_root
        if root.is_dir():
            report.worktrees = sorted(entry.name for entry in root.iterdir() if entry.is_dir())
        for name in report.worktrees:
            task = self.repository.find_task(name)
            if task is None or task.status is TaskStatus.DONE:
                report.orphaned_worktrees.append(name)

        report.sessions = self.sessions.list_sessions(self.layout.session_prefix)
        for session_id in report.sessions:
            stored = self.repository.get_session(session_id)
            if stored is None or stored.state not in {SessionState.WORKING, SessionState.PAUSED}:
                report.orphaned_sessions.append(session_id)
        if report.orphaned_worktrees or report.orphaned_sessions:
            logger.warning(
                "Cleanup found %d orphaned worktree(s) and %d orphaned session(s)",
                len(report.orphaned_worktrees),
                len(report.orphaned_sessions),
            )
        return report

    def _reconcile_session(self, session: SessionView) -> ReconcileOutcome:
        lines, offset = read_log_from_offset(Path(session.log_path), session.log_offset)
        marker: str | None = None
        for line in lines:
            match = _STATUS_MARKER_RE.match(line)
            if match:
                marker = match.group(1).lower()

        task = self.repository.get_task(session.task_id)
        state = session.state
        if marker is not None:
            state = _MARKER_STATES[marker]
            if marker == "done" and task.status is TaskStatus.IN_PROGRESS:
                task = self.repository.submit_for_review(
                    task.task_id,
                    details={"source": "session", "session_id": session.session_id},
                )
            elif marker == "blocked" and task.status is TaskStatus.IN_PROGRESS:
                task = self.repository.transition(
                    task.task_id,
                    target=TaskStatus.BLOCKED,
                    event_type="agent_blocked",
                    details={"session_id": session.session_id},
                )
        self.repository.update_session(session.session_id, state=state, log_offset=offset)
        if marker is not None:
            logger.info(
                "Session %s reported %s; task %s is %s",
                session.session_id,
                marker,
                task.task_id,
                task.status.value,
            )
        return ReconcileOutcome(
            task_id=task.task_id,
            session_id=session.session_id,
            state=state,
            task_status=task.status,
            new_lines=len(lines),
        )

    def _resolve_session_id(self, task_id: str) -> str:
        session = self.repository.find_session_by_task(task_id)
        if session is not None:
            return session.session_id
        return self.layout.session_id_for(task_id)

    def _reservation_owners(self, task_id: str) -> list[str]:
        owners = [task_id, self.layout.session_id_for(task_id)]
        session = self.repository.find_session_by_task(task_id)
        if session is not None and session.session_id not in owners:
            owners.append(session.session_id)
        return owners
