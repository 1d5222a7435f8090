"""CLI entrypoint for taskforge."""

from pathlib import Path
from typing import Any

import rich_click as click

from taskforge import __version__
from taskforge.config import ConfigurationError
from taskforge.orchestrator.controllers import (
    CoordinationCliController,
    LockAcquireCommand,
    LockForceReleaseCommand,
    LockListCommand,
    LockReleaseCommand,
    LockRenewCommand,
    MailInboxCommand,
    MailMarkCommand,
    MailSearchCommand,
    MailSendCommand,
    MailThreadCommand,
    OrchestratorCliController,
    ReviewDiffCommand,
    ReviewRevertCommand,
    ReviewTextCommand,
    TaskApproveCommand,
    TaskAssignCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskQuickCommand,
    TaskReconcileCommand,
    TaskRejectCommand,
)
from taskforge.orchestrator.errors import OrchestratorError
from taskforge.orchestrator.models import Importance, RecipientScope, TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
COORDINATION_CONTROLLER = CoordinationCliController()


class TaskforgeGroup(click.RichGroup):
    """Root group that reports engine failures as CLI errors."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except OrchestratorError as error:
            raise click.ClickException(f"{error.category.value}: {error}") from error
        except ConfigurationError as error:
            raise click.ClickException(f"configuration: {error}") from error


@click.group(cls=TaskforgeGroup)
@click.version_option(version=__version__, prog_name="taskforge")
def taskforge() -> None:
    """Local orchestration for coding agents: tasks, worktrees, sessions, review."""


@taskforge.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def init(db_path: Path | None) -> None:
    """Create the state directory and apply database migrations."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.init_project(db_path))


@taskforge.group()
def task() -> None:
    """Task lifecycle commands."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Task title.")
@click.option("--task-id", default=None, help="Explicit id; generated from prefix if omitted.")
@click.option("--summary", default="", help="Longer task description.")
@click.option(
    "--criterion",
    "acceptance_criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
@click.option(
    "--scope",
    "scope_paths",
    multiple=True,
    help="Allowed path glob (trailing / for a subtree). Can be repeated.",
)
@click.option("--user-story", default=None, help="User story text.")
@click.option(
    "--mvp/--no-mvp",
    "mvp_included",
    default=None,
    help="Whether the task is part of the minimum viable scope.",
)
@click.option("--assignee", default=None, help="Initial assignee.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    task_id: str | None,
    summary: str,
    acceptance_criteria: tuple[str, ...],
    scope_paths: tuple[str, ...],
    user_story: str | None,
    mvp_included: bool | None,
    assignee: str | None,
) -> None:
    """Create a task in todo."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                title=title,
                task_id=task_id,
                summary=summary,
                acceptance_criteria=acceptance_criteria,
                scope_paths=scope_paths,
                user_story=user_story,
                mvp_included=mvp_included,
                assignee=assignee,
            ),
        ),
    )


@task.command("quick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--assignee", default=None, help="Assignee for the new task.")
@click.argument("text")
def task_quick(db_path: Path | None, assignee: str | None, text: str) -> None:
    """Create an assigned task from free text; the first line becomes the title."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.quick_task(
            TaskQuickCommand(db_path=db_path, text=text, assignee=assignee),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Maximum tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks in creation order."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@task.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.show_task(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("assign")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@click.argument("assignee")
def task_assign(db_path: Path | None, task_id: str, assignee: str) -> None:
    """Assign a task to an agent or person."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.assign_task(
            TaskAssignCommand(db_path=db_path, task_id=task_id, assignee=assignee),
        ),
    )


@task.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_start(db_path: Path | None, task_id: str) -> None:
    """Provision the worktree and agent session, then mark the task in progress."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.start_task(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_resume(db_path: Path | None, task_id: str) -> None:
    """Restart the session of a blocked task."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.resume_task(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_stop(db_path: Path | None, task_id: str) -> None:
    """Stop the agent session and block the task."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.stop_task(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_submit(db_path: Path | None, task_id: str) -> None:
    """Move an in-progress task into the review queue."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.submit_task(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", default=None, help="Only poll this task's session.")
def task_reconcile(db_path: Path | None, task_id: str | None) -> None:
    """Read new session log output and apply reported status markers."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.reconcile(TaskReconcileCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_cleanup(db_path: Path | None) -> None:
    """List worktrees and tmux sessions that no active task owns (dry-run)."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.cleanup(db_path))


@task.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch", default=None, help="Branch to merge; the task branch if omitted.")
@click.argument("task_id")
def task_approve(db_path: Path | None, branch: str | None, task_id: str) -> None:
    """Merge a reviewed task; out-of-scope changes need an override or explanation first."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.approve_task(
            TaskApproveCommand(db_path=db_path, task_id=task_id, branch=branch),
        ),
    )


@task.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--feedback", required=True, help="Why the task goes back to todo.")
@click.argument("task_id")
def task_reject(db_path: Path | None, feedback: str, task_id: str) -> None:
    """Send a reviewed task back to todo with feedback."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.reject_task(
            TaskRejectCommand(db_path=db_path, task_id=task_id, feedback=feedback),
        ),
    )


@taskforge.group()
def review() -> None:
    """Review commands."""


@review.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def review_show(db_path: Path | None, task_id: str) -> None:
    """Show review summary: files, alignment, story drift and tests."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_show(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@review.command("diff")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--file", "file_path", default=None, help="File to show; first changed file if omitted.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True, help="Diff page.")
@click.argument("task_id")
def review_diff(db_path: Path | None, file_path: str | None, page: int, task_id: str) -> None:
    """Print one page of a file's diff against the base branch."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_diff(
            ReviewDiffCommand(db_path=db_path, task_id=task_id, file_path=file_path, page=page),
        ),
    )


@review.command("feedback")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reject", is_flag=True, default=False, help="Reject the task with this feedback.")
@click.argument("task_id")
@click.argument("text")
def review_feedback(db_path: Path | None, reject: bool, task_id: str, text: str) -> None:
    """Save review feedback, optionally rejecting in the same step."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_feedback(
            ReviewTextCommand(db_path=db_path, task_id=task_id, text=text, reject=reject),
        ),
    )


@review.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def review_reject(db_path: Path | None, task_id: str) -> None:
    """Reject using the feedback already captured for this review round."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_reject(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@review.command("accept")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def review_accept(db_path: Path | None, task_id: str) -> None:
    """Acknowledge out-of-scope changes so the task can be approved."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_accept(TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@review.command("explain")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@click.argument("text")
def review_explain(db_path: Path | None, task_id: str, text: str) -> None:
    """Record why out-of-scope changes are needed."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_explain(
            ReviewTextCommand(db_path=db_path, task_id=task_id, text=text),
        ),
    )


@review.command("story")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@click.argument("text")
def review_story(db_path: Path | None, task_id: str, text: str) -> None:
    """Replace the user story and reset drift tracking."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_story(
            ReviewTextCommand(db_path=db_path, task_id=task_id, text=text),
        ),
    )


@review.command("revert")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--file", "file_path", default=None, help="File to restore from the base branch.")
@click.argument("task_id")
def review_revert(db_path: Path | None, file_path: str | None, task_id: str) -> None:
    """Restore one changed file from the base branch and commit on the task branch."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_revert(
            ReviewRevertCommand(db_path=db_path, task_id=task_id, file_path=file_path),
        ),
    )


@review.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def review_approve(db_path: Path | None, task_id: str) -> None:
    """Approve and merge, enforcing the scope gate."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.review_approve(
            TaskMutateCommand(db_path=db_path, task_id=task_id),
        ),
    )


@taskforge.group()
def lock() -> None:
    """File reservation commands."""


@lock.command("acquire")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", required=True, help="Reservation owner (agent or task id).")
@click.option("--reason", default="", help="Why the paths are reserved.")
@click.option(
    "--ttl-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override TASKFORGE_RESERVATION_TTL_SECONDS.",
)
@click.argument("paths", nargs=-1, required=True)
def lock_acquire(
    db_path: Path | None,
    owner: str,
    reason: str,
    ttl_seconds: int | None,
    paths: tuple[str, ...],
) -> None:
    """Reserve repo-relative paths for one owner."""

    _emit_lines(
        COORDINATION_CONTROLLER.acquire(
            LockAcquireCommand(
                db_path=db_path,
                paths=paths,
                owner=owner,
                reason=reason,
                ttl_seconds=ttl_seconds,
            ),
        ),
    )


@lock.command("release")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", required=True, help="Reservation owner.")
@click.argument("paths", nargs=-1, required=True)
def lock_release(db_path: Path | None, owner: str, paths: tuple[str, ...]) -> None:
    """Release paths held by an owner."""

    _emit_lines(
        COORDINATION_CONTROLLER.release(
            LockReleaseCommand(db_path=db_path, paths=paths, owner=owner),
        ),
    )


@lock.command("renew")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", required=True, help="Reservation owner.")
@click.option(
    "--extend-seconds",
    type=click.IntRange(min=1),
    default=3600,
    show_default=True,
    help="Seconds added to each expiry.",
)
@click.argument("paths", nargs=-1)
def lock_renew(
    db_path: Path | None,
    owner: str,
    extend_seconds: int,
    paths: tuple[str, ...],
) -> None:
    """Extend an owner's reservations (all of them when no paths are given)."""

    _emit_lines(
        COORDINATION_CONTROLLER.renew(
            LockRenewCommand(
                db_path=db_path,
                owner=owner,
                paths=paths,
                extend_seconds=extend_seconds,
            ),
        ),
    )


@lock.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--scope",
    type=click.Choice([scope.value for scope in RecipientScope], case_sensitive=False),
    default=RecipientScope.ALL.value,
    show_default=True,
    help="all, only mine, or those whose reason mentions me.",
)
@click.option("--me", default=None, help="Identity for --scope; defaults to TASKFORGE_OPERATOR.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="Maximum reservations to print; defaults to TASKFORGE_RESERVATION_LIST_LIMIT.",
)
def lock_list(db_path: Path | None, scope: str, me: str | None, limit: int | None) -> None:
    """List active reservations, newest first."""

    _emit_lines(
        COORDINATION_CONTROLLER.list_locks(
            LockListCommand(db_path=db_path, scope=scope, me=me, limit=limit),
        ),
    )


@lock.command("force-release")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("reservation_id", type=int)
def lock_force_release(db_path: Path | None, reservation_id: int) -> None:
    """Release a reservation regardless of owner."""

    _emit_lines(
        COORDINATION_CONTROLLER.force_release(
            LockForceReleaseCommand(db_path=db_path, reservation_id=reservation_id),
        ),
    )


@taskforge.group()
def mail() -> None:
    """Agent mailbox commands."""


@mail.command("send")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--from", "sender", required=True, help="Sender name.")
@click.option("--to", "recipients", multiple=True, required=True, help="Recipient. Can be repeated.")
@click.option("--subject", default="", help="Message subject.")
@click.option("--body", default="", help="Message body.")
@click.option(
    "--importance",
    type=click.Choice([item.value for item in Importance], case_sensitive=False),
    default=Importance.NORMAL.value,
    show_default=True,
)
@click.option("--thread-id", default=None, help="Reply within an existing thread.")
@click.option("--ack-required", is_flag=True, default=False, help="Ask recipients to acknowledge.")
def mail_send(  # noqa: PLR0913
    db_path: Path | None,
    sender: str,
    recipients: tuple[str, ...],
    subject: str,
    body: str,
    importance: str,
    thread_id: str | None,
    ack_required: bool,
) -> None:
    """Send a message to one or more recipients."""

    _emit_lines(
        COORDINATION_CONTROLLER.send(
            MailSendCommand(
                db_path=db_path,
                sender=sender,
                recipients=recipients,
                subject=subject,
                body=body,
                importance=importance,
                thread_id=thread_id,
                ack_required=ack_required,
            ),
        ),
    )


@mail.command("inbox")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--urgent", "urgent_only", is_flag=True, default=False, help="Only urgent messages.")
@click.option(
    "--scope",
    type=click.Choice([scope.value for scope in RecipientScope], case_sensitive=False),
    default=RecipientScope.ALL.value,
    show_default=True,
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Page size.",
)
@click.option("--page-token", default=None, help="Token printed by the previous page.")
@click.argument("recipient")
def mail_inbox(  # noqa: PLR0913
    db_path: Path | None,
    urgent_only: bool,
    scope: str,
    limit: int,
    page_token: str | None,
    recipient: str,
) -> None:
    """Show a recipient's inbox, newest first."""

    _emit_lines(
        COORDINATION_CONTROLLER.inbox(
            MailInboxCommand(
                db_path=db_path,
                recipient=recipient,
                urgent_only=urgent_only,
                scope=scope,
                limit=limit,
                page_token=page_token,
            ),
        ),
    )


@mail.command("read")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("message_id")
@click.argument("recipient")
def mail_read(db_path: Path | None, message_id: str, recipient: str) -> None:
    """Mark a delivered message as read."""

    _emit_lines(
        COORDINATION_CONTROLLER.mark_read(
            MailMarkCommand(db_path=db_path, message_id=message_id, recipient=recipient),
        ),
    )


@mail.command("ack")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("message_id")
@click.argument("recipient")
def mail_ack(db_path: Path | None, message_id: str, recipient: str) -> None:
    """Acknowledge a message (also marks it read)."""

    _emit_lines(
        COORDINATION_CONTROLLER.acknowledge(
            MailMarkCommand(db_path=db_path, message_id=message_id, recipient=recipient),
        ),
    )


@mail.command("search")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
)
@click.argument("query")
def mail_search(db_path: Path | None, limit: int, query: str) -> None:
    """Search subjects, bodies and senders."""

    _emit_lines(
        COORDINATION_CONTROLLER.search(
            MailSearchCommand(db_path=db_path, query=query, limit=limit),
        ),
    )


@mail.command("thread")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("thread_id")
def mail_thread(db_path: Path | None, thread_id: str) -> None:
    """Show every message in a thread."""

    _emit_lines(
        COORDINATION_CONTROLLER.thread(MailThreadCommand(db_path=db_path, thread_id=thread_id)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskforge()
