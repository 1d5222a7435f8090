"""Controllers for taskforge CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from taskforge.config import Settings
from taskforge.orchestrator.lifecycle import ProjectLayout, TaskLifecycleOrchestrator
from taskforge.orchestrator.mailbox import Mailbox, filter_inbox, filter_reservations
from taskforge.orchestrator.models import (
    Importance,
    MessageSend,
    RecipientScope,
    TaskCreate,
    TaskStatus,
)
from taskforge.orchestrator.repository import OrchestratorRepository
from taskforge.orchestrator.reservations import ReservationManager
from taskforge.orchestrator.review import ReviewDiffBrowser, ReviewLoader, ReviewWorkflow
from taskforge.orchestrator.runner import ProcessRunner, SubprocessRunner
from taskforge.orchestrator.vcs import GitClient


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for explicit task creation."""

    db_path: Path | None
    title: str
    task_id: str | None
    summary: str
    acceptance_criteria: tuple[str, ...]
    scope_paths: tuple[str, ...]
    user_story: str | None
    mvp_included: bool | None
    assignee: str | None


@dataclass(slots=True)
class TaskQuickCommand:
    db_path: Path | None
    text: str
    assignee: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for single-task lifecycle operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskAssignCommand:
    db_path: Path | None
    task_id: str
    assignee: str


@dataclass(slots=True)
class TaskApproveCommand:
    db_path: Path | None
    task_id: str
    branch: str | None


@dataclass(slots=True)
class TaskRejectCommand:
    db_path: Path | None
    task_id: str
    feedback: str


@dataclass(slots=True)
class TaskReconcileCommand:
    db_path: Path | None
    task_id: str | None


@dataclass(slots=True)
class ReviewDiffCommand:
    """CLI input for paged diff output."""

    db_path: Path | None
    task_id: str
    file_path: str | None
    page: int


@dataclass(slots=True)
class ReviewTextCommand:
    """CLI input for review actions carrying free text."""

    db_path: Path | None
    task_id: str
    text: str
    reject: bool = False


@dataclass(slots=True)
class ReviewRevertCommand:
    db_path: Path | None
    task_id: str
    file_path: str | None


@dataclass(slots=True)
class LockAcquireCommand:
    db_path: Path | None
    paths: tuple[str, ...]
    owner: str
    reason: str
    ttl_seconds: int | None


@dataclass(slots=True)
class LockReleaseCommand:
    db_path: Path | None
    paths: tuple[str, ...]
    owner: str


@dataclass(slots=True)
class LockRenewCommand:
    db_path: Path | None
    owner: str
    paths: tuple[str, ...]
    extend_seconds: int


@dataclass(slots=True)
class LockListCommand:
    db_path: Path | None
    scope: str
    me: str | None
    limit: int | None


@dataclass(slots=True)
class LockForceReleaseCommand:
    db_path: Path | None
    reservation_id: int


@dataclass(slots=True)
class MailSendCommand:
    db_path: Path | None
    sender: str
    recipients: tuple[str, ...]
    subject: str
    body: str
    importance: str
    thread_id: str | None
    ack_required: bool


@dataclass(slots=True)
class MailInboxCommand:
    db_path: Path | None
    recipient: str
    urgent_only: bool
    scope: str
    limit: int
    page_token: str | None


@dataclass(slots=True)
class MailMarkCommand:
    db_path: Path | None
    message_id: str
    recipient: str


@dataclass(slots=True)
class MailSearchCommand:
    db_path: Path | None
    query: str
    limit: int


@dataclass(slots=True)
class MailThreadCommand:
    db_path: Path | None
    thread_id: str


class OrchestratorCliController:
    """Coordinates task lifecycle and review CLI operations."""

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        self.runner = runner

    def init_project(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        for directory in (
            settings.state_dir,
            settings.workspace.workspaces_root,
            settings.workspace.sessions_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        with _repository(settings):
            pass
        return [
            f"Initialized taskforge state in {settings.state_dir}",
            f"Database: {settings.db_path}",
        ]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.create_task(
                TaskCreate(
                    title=command.title,
                    task_id=command.task_id,
                    summary=command.summary,
                    acceptance_criteria=command.acceptance_criteria,
                    scope_paths=command.scope_paths,
                    user_story=command.user_story,
                    mvp_included=command.mvp_included,
                    assignee=command.assignee,
                ),
            )
        return [f"Task created: task_id={task.task_id} status={task.status.value}"]

    def quick_task(self, command: TaskQuickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.quick_task(command.text, assignee=command.assignee)
        return [
            f"Task created: task_id={task.task_id} status={task.status.value}",
            f"Title: {task.title}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status, limit=command.limit)
            queue = set(repository.list_review_queue())

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"assignee={task.assignee or '-'}"
                f"{' queued' if task.task_id in queue else ''} title={task.title}",
            )
        return lines

    def show_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        session = details.session
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Assignee: {task.assignee or '-'}",
            f"Branch: {task.branch or '-'}",
            f"Worktree: {task.worktree_path or '-'}",
            "Session: "
            + (f"{session.session_id} state={session.state.value}" if session else "-"),
            f"In review queue: {'yes' if details.in_review_queue else 'no'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def assign_task(self, command: TaskAssignCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.assign_task(command.task_id, command.assignee)
        return [f"Task assigned: {task.task_id} -> {task.assignee} ({task.status.value})"]

    def start_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            started = orchestrator.start_task(command.task_id)
        return [
            f"Task started: {started.task.task_id} status={started.task.status.value}",
            f"Branch: {started.branch}",
            f"Worktree: {started.worktree_path}",
            f"Session: {started.session.session_id} log={started.session.log_path}",
        ]

    def resume_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            started = orchestrator.resume_task(command.task_id)
        return [
            f"Task resumed: {started.task.task_id} session={started.session.session_id}",
        ]

    def stop_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.stop_task(command.task_id)
        return [f"Task stopped: {task.task_id} status={task.status.value}"]

    def submit_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.submit_for_review(command.task_id)
        return [f"Task submitted for review: {task.task_id}"]

    def reconcile(self, command: TaskReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            outcomes = orchestrator.reconcile(command.task_id)
        lines = [f"Sessions polled: {len(outcomes)}"]
        for outcome in outcomes:
            lines.append(
                f"  {outcome.session_id} task={outcome.task_id} state={outcome.state.value} "
                f"task_status={outcome.task_status.value} new_lines={outcome.new_lines}",
            )
        return lines

    def cleanup(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with self._orchestrator(settings) as orchestrator:
            report = orchestrator.cleanup_report()
        lines = ["Cleanup (dry-run):", f"  Worktrees: {len(report.worktrees)}"]
        lines.extend(
            f"   - {name}" + (" (orphaned)" if name in report.orphaned_worktrees else "")
            for name in report.worktrees
        )
        lines.append(f"  Sessions: {len(report.sessions)}")
        lines.extend(
            f"   - {name}" + (" (orphaned)" if name in report.orphaned_sessions else "")
            for name in report.sessions
        )
        lines.append("  No changes applied.")
        return lines

    def approve_task(self, command: TaskApproveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            task = workflow.approve(command.task_id, branch=command.branch)
        return [f"Task approved: {task.task_id} status={task.status.value}"]

    def reject_task(self, command: TaskRejectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._orchestrator(settings) as orchestrator:
            task = orchestrator.reject_task(command.task_id, command.feedback)
        return [f"Task rejected: {task.task_id} status={task.status.value}"]

    def review_show(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            detail = workflow.detail(command.task_id)
        return ReviewWorkflow.describe(detail)

    def review_diff(self, command: ReviewDiffCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            detail = workflow.detail(command.task_id)
            browser = ReviewDiffBrowser.for_detail(
                workflow.loader.git,
                detail,
                page_size=settings.review.diff_page_size,
            )
            if browser.current_file is None:
                return ["No changes between base and task branch."]
            if command.file_path:
                browser.select_path(command.file_path)
            browser.scroll(max(0, command.page - 1) * browser.page_size)
            current = browser.current_file
            lines = [
                f"{current.path} +{current.added} -{current.deleted} "
                f"(lines {browser.offset + 1}-{browser.offset + len(browser.page())} "
                f"of {len(browser.lines())})",
            ]
            lines.extend(browser.page())
        return lines

    def review_feedback(self, command: ReviewTextCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            message = workflow.submit(command.task_id, command.text, reject=command.reject)
        return [message]

    def review_reject(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            return [workflow.reject(command.task_id)]

    def review_accept(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            return [workflow.accept_override(command.task_id)]

    def review_explain(self, command: ReviewTextCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            return [workflow.explain(command.task_id, command.text)]

    def review_story(self, command: ReviewTextCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            return [workflow.update_user_story(command.task_id, command.text)]

    def review_revert(self, command: ReviewRevertCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            detail = workflow.detail(command.task_id)
            return [workflow.revert_file(detail, command.file_path)]

    def review_approve(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._review(settings) as workflow:
            task = workflow.approve(command.task_id)
        return [f"Task approved: {task.task_id} status={task.status.value}"]

    @contextmanager
    def _orchestrator(self, settings: Settings) -> Iterator[TaskLifecycleOrchestrator]:
        with _repository(settings) as repository:
            yield TaskLifecycleOrchestrator(
                repository,
                layout=ProjectLayout.from_settings(settings),
                runner=self.runner or SubprocessRunner(),
                reservations=ReservationManager(
                    repository.engine,
                    default_ttl=timedelta(seconds=settings.reservations.default_ttl_seconds),
                ),
            )

    @contextmanager
    def _review(self, settings: Settings) -> Iterator[ReviewWorkflow]:
        with self._orchestrator(settings) as orchestrator:
            loader = ReviewLoader(
                orchestrator.repository,
                GitClient(settings.project_root, runner=self.runner or SubprocessRunner()),
                base_branch=settings.workspace.base_branch,
                branch_prefix=settings.workspace.branch_prefix,
                stories_dir=settings.state_dir / "stories",
            )
            yield ReviewWorkflow(orchestrator, loader)


class CoordinationCliController:
    """Reservation and mailbox CLI operations."""

    def acquire(self, command: LockAcquireCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        ttl = timedelta(seconds=command.ttl_seconds) if command.ttl_seconds else None
        with _repository(settings) as repository:
            batch = _reservations(repository, settings).acquire_many(
                command.paths,
                command.owner,
                reason=command.reason,
                ttl=ttl,
            )
        lines = [f"Granted: {len(batch.granted)} Conflicts: {len(batch.conflicts)}"]
        lines.extend(
            f"  granted {item.path} until {item.expires_at.isoformat()}" for item in batch.granted
        )
        lines.extend(
            f"  conflict {item.path} held by {item.owner} until {item.expires_at.isoformat()}"
            for item in batch.conflicts
        )
        return lines

    def release(self, command: LockReleaseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            manager = _reservations(repository, settings)
            released = [path for path in command.paths if manager.release(path, command.owner)]
        return [f"Released: {len(released)}", *(f"  {path}" for path in released)]

    def renew(self, command: LockRenewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            renewed = _reservations(repository, settings).renew(
                command.owner,
                command.paths,
                extend=timedelta(seconds=command.extend_seconds),
            )
        return [
            f"Renewed: {len(renewed)}",
            *(f"  {item.path} until {item.expires_at.isoformat()}" for item in renewed),
        ]

    def list_locks(self, command: LockListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            active = _reservations(repository, settings).list_active(
                command.limit if command.limit is not None else settings.reservations.list_limit,
            )
        scope = RecipientScope(command.scope.lower())
        me = command.me or settings.intake.operator_name
        selected = filter_reservations(active, scope=scope, me=me)
        lines = [f"Active reservations: {len(selected)}"]
        for item in selected:
            lines.append(
                f"  #{item.reservation_id} {item.path} owner={item.owner} "
                f"expires={item.expires_at.isoformat()} reason={item.reason or '-'}",
            )
        return lines

    def force_release(self, command: LockForceReleaseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            item = _reservations(repository, settings).force_release(command.reservation_id)
        return [f"Force-released #{item.reservation_id} {item.path} (owner {item.owner})"]

    def send(self, command: MailSendCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            message = Mailbox(repository.engine).send(
                MessageSend(
                    sender=command.sender,
                    recipients=command.recipients,
                    subject=command.subject,
                    body=command.body,
                    importance=Importance(command.importance.lower()),
                    thread_id=command.thread_id,
                    ack_required=command.ack_required,
                ),
            )
        return [
            f"Message sent: {message.message_id} thread={message.thread_id} "
            f"to={','.join(message.recipients)} importance={message.importance.value}",
        ]

    def inbox(self, command: MailInboxCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            page = Mailbox(repository.engine).inbox(
                command.recipient,
                limit=command.limit,
                urgent_only=command.urgent_only,
                page_token=command.page_token,
            )
        entries = filter_inbox(
            page.entries,
            scope=RecipientScope(command.scope.lower()),
            me=command.recipient,
        )
        lines = [f"Inbox {command.recipient}: {len(entries)}"]
        for entry in entries:
            message = entry.message
            flags = ("read" if entry.read_at else "new") + (" acked" if entry.ack_at else "")
            lines.append(
                f"  {message.message_id} [{message.importance.value}] {flags} "
                f"from={message.sender} subject={message.subject}",
            )
        if page.next_page_token:
            lines.append(f"Next page token: {page.next_page_token}")
        return lines

    def mark_read(self, command: MailMarkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            Mailbox(repository.engine).mark_read(command.message_id, command.recipient)
        return [f"Marked read: {command.message_id}"]

    def acknowledge(self, command: MailMarkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            Mailbox(repository.engine).acknowledge(command.message_id, command.recipient)
        return [f"Acknowledged: {command.message_id}"]

    def search(self, command: MailSearchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            messages = Mailbox(repository.engine).search(command.query, limit=command.limit)
        lines = [f"Matches: {len(messages)}"]
        lines.extend(
            f"  {message.message_id} thread={message.thread_id} from={message.sender} "
            f"subject={message.subject}"
            for message in messages
        )
        return lines

    def thread(self, command: MailThreadCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            mailbox = Mailbox(repository.engine)
            summary = mailbox.thread_summary(command.thread_id)
            messages = mailbox.list_thread(command.thread_id)
        lines = [
            f"Thread {summary.thread_id}: {summary.message_count} messages",
            f"Participants: {', '.join(summary.participants)}",
        ]
        lines.extend(
            f"  {message.created_at.isoformat()} {message.sender}: {message.subject}"
            for message in messages
        )
        return lines


def _reservations(repository: OrchestratorRepository, settings: Settings) -> ReservationManager:
    return ReservationManager(
        repository.engine,
        default_ttl=timedelta(seconds=settings.reservations.default_ttl_seconds),
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
