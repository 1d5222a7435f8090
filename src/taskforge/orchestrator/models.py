"""Domain models for task orchestration, reservations, mailbox and review."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    TODO = "todo"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    DONE = "done"


class SessionState(str, Enum):
    """Observed state of an agent terminal session."""

    WORKING = "working"
    PAUSED = "paused"
    DONE = "done"
    STOPPED = "stopped"


class Importance(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Alignment(str, Enum):
    """Whether touched files stay inside the declared minimum scope."""

    MVP = "mvp"
    OUT = "out"
    UNKNOWN = "unknown"


class StoryDrift(str, Enum):
    OK = "ok"
    CHANGED = "changed"
    UNKNOWN = "unknown"


class RecipientScope(str, Enum):
    """Read-side views over an inbox."""

    ALL = "all"
    ME = "me"
    MENTIONS = "mentions"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    task_id: str | None = None
    status: TaskStatus = TaskStatus.TODO
    summary: str = ""
    acceptance_criteria: tuple[str, ...] = ()
    assignee: str | None = None
    user_story: str | None = None
    mvp_included: bool | None = None
    scope_paths: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and orchestration logic."""

    task_id: str
    title: str
    status: TaskStatus
    summary: str
    acceptance_criteria: list[str]
    assignee: str | None
    user_story: str | None
    user_story_hash: str | None
    mvp_included: bool | None
    scope_paths: list[str]
    mvp_override_acknowledged: bool
    branch: str | None
    worktree_path: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its event stream and current session."""

    task: TaskView
    events: list[TaskEventView]
    session: SessionView | None
    in_review_queue: bool


@dataclass(slots=True)
class SessionView:
    session_id: str
    task_id: str
    state: SessionState
    workdir: str
    log_path: str
    log_offset: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StartedTask:
    """Outcome of provisioning a worktree and session for a task."""

    task: TaskView
    session: SessionView
    branch: str
    worktree_path: str


@dataclass(slots=True)
class ReconcileOutcome:
    """Result of polling one session log."""

    task_id: str
    session_id: str
    state: SessionState
    task_status: TaskStatus
    new_lines: int


@dataclass(slots=True)
class CleanupReport:
    """Dry-run inventory of worktrees and tmux sessions left behind by tasks."""

    worktrees: list[str] = field(default_factory=list)
    sessions: list[str] = field(default_factory=list)
    orphaned_worktrees: list[str] = field(default_factory=list)
    orphaned_sessions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReservationView:
    reservation_id: int
    path: str
    owner: str
    reason: str
    exclusive: bool
    created_at: datetime
    expires_at: datetime
    released_at: datetime | None


@dataclass(slots=True)
class ReservationBatch:
    """Per-path outcome of a multi-path acquire."""

    granted: list[ReservationView] = field(default_factory=list)
    conflicts: list[ReservationView] = field(default_factory=list)


@dataclass(slots=True)
class MessageSend:
    """Input payload for sending one message."""

    sender: str
    recipients: tuple[str, ...]
    subject: str = ""
    body: str = ""
    importance: Importance = Importance.NORMAL
    thread_id: str | None = None
    message_id: str | None = None
    ack_required: bool = False


@dataclass(slots=True)
class MessageView:
    message_id: str
    thread_id: str
    sender: str
    subject: str
    body: str
    importance: Importance
    ack_required: bool
    created_at: datetime
    recipients: list[str] = field(default_factory=list)


@dataclass(slots=True)
class InboxEntry:
    """One message as delivered to one recipient."""

    message: MessageView
    recipient: str
    delivered_at: datetime
    read_at: datetime | None
    ack_at: datetime | None


@dataclass(slots=True)
class InboxPage:
    entries: list[InboxEntry]
    next_page_token: str | None


@dataclass(slots=True)
class ThreadSummary:
    thread_id: str
    message_count: int
    participants: list[str]
    first_at: datetime
    last_at: datetime
    last_subject: str


@dataclass(slots=True)
class DiffFileStat:
    """Per-file line counts between base and task branch."""

    path: str
    added: int
    deleted: int


@dataclass(slots=True)
class ReviewDetail:
    """Derived review summary; rebuilt on every load."""

    task_id: str
    title: str
    summary: str
    user_story: str
    story_drift: StoryDrift
    alignment: Alignment
    acceptance_criteria: list[str]
    files: list[DiffFileStat]
    tests_summary: str
    base_branch: str
    task_branch: str
    override_acknowledged: bool = False
    explanations: list[str] = field(default_factory=list)
    feedback: list[str] = field(default_factory=list)
