from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskforge.orchestrator.errors import (
    ConflictError,
    ExternalToolError,
    InvalidTransitionError,
    NotInProgressError,
    NotInReviewError,
    ValidationError,
)
from taskforge.orchestrator.models import SessionState, TaskCreate, TaskStatus
from taskforge.orchestrator.reservations import ReservationManager

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Start, Stop, Review Hand-off"),
]


def _merges(fake_runner) -> list[tuple[str, ...]]:
    return [call for call in fake_runner.commands("git") if call[0] == "merge"]


def test_start_provisions_worktree_session_and_status(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")

    started = orchestrator.start_task("T1")

    assert started.task.status == TaskStatus.IN_PROGRESS
    assert started.branch == "feature/T1"
    assert Path(started.worktree_path).name == "T1"
    assert started.session.session_id == "tf-T1"
    assert started.session.state == SessionState.WORKING
    assert "tf-T1" in fake_runner.live_sessions
    events = [event.event_type for event in orchestrator.repository.list_events("T1")]
    assert events == ["created", "auto_assigned", "started"]


def test_create_records_created_event_and_rejects_duplicate_id(orchestrator) -> None:
    created = orchestrator.create_task(TaskCreate(title="Build it", task_id="T1"))

    assert created.status == TaskStatus.TODO
    events = orchestrator.repository.list_events("T1")
    assert [(event.event_type, event.status_to) for event in events] == [
        ("created", TaskStatus.TODO),
    ]

    with pytest.raises(ConflictError):
        orchestrator.create_task(TaskCreate(title="Again", task_id="T1"))
    assert len(orchestrator.repository.list_events("T1")) == 1


def test_start_then_stop_blocks_task_and_stops_session(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")

    stopped = orchestrator.stop_task("T1")

    assert stopped.status == TaskStatus.BLOCKED
    assert "tf-T1" not in fake_runner.live_sessions
    session = orchestrator.repository.find_session_by_task("T1")
    assert session is not None
    assert session.state == SessionState.STOPPED
    assert orchestrator.repository.list_sessions(
        states=(SessionState.WORKING, SessionState.PAUSED, SessionState.DONE),
    ) == []

    # stopping again is a no-op on the session and keeps the task blocked
    assert orchestrator.stop_task("T1").status == TaskStatus.BLOCKED


def test_invalid_task_id_runs_no_commands(orchestrator, fake_runner) -> None:
    with pytest.raises(ValidationError):
        orchestrator.start_task("../escape")
    with pytest.raises(ValidationError):
        orchestrator.stop_task("bad id")
    assert fake_runner.calls == []


def test_start_is_rejected_outside_startable_states(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    calls_before = len(fake_runner.calls)

    with pytest.raises(InvalidTransitionError):
        orchestrator.start_task("T1")
    assert len(fake_runner.calls) == calls_before


def test_start_reattaches_to_running_session(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    fake_runner.live_sessions.add("tf-T1")

    orchestrator.start_task("T1")

    assert not any(call[0] == "new-session" for call in fake_runner.commands("tmux"))


def test_resume_reuses_worktree_and_session_id(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    orchestrator.stop_task("T1")

    resumed = orchestrator.resume_task("T1")

    assert resumed.task.status == TaskStatus.IN_PROGRESS
    assert resumed.session.session_id == "tf-T1"
    assert resumed.session.state == SessionState.WORKING
    worktree_adds = [call for call in fake_runner.commands("git") if call[:2] == ("worktree", "add")]
    assert len(worktree_adds) == 1


def test_resume_requires_blocked(orchestrator, seed_task) -> None:
    seed_task("T1")
    with pytest.raises(InvalidTransitionError):
        orchestrator.resume_task("T1")


def test_stop_requires_started_task(orchestrator, seed_task) -> None:
    seed_task("T1")
    with pytest.raises(NotInProgressError):
        orchestrator.stop_task("T1")


def test_session_start_failure_is_not_rolled_back(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    fake_runner.fail("tmux", "new-session")

    with pytest.raises(ExternalToolError):
        orchestrator.start_task("T1")

    task = orchestrator.repository.get_task("T1")
    assert task.status == TaskStatus.ASSIGNED
    assert orchestrator.workspaces.path_for("T1").exists()
    assert orchestrator.repository.find_session_by_task("T1") is None


def test_submit_queues_task_and_marks_session_done(orchestrator, seed_task) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")

    submitted = orchestrator.submit_for_review("T1")

    assert submitted.status == TaskStatus.REVIEW
    assert orchestrator.repository.list_review_queue() == ["T1"]
    session = orchestrator.repository.find_session_by_task("T1")
    assert session is not None
    assert session.state == SessionState.DONE


def test_approve_merges_once(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    orchestrator.submit_for_review("T1")

    done = orchestrator.approve_task("T1")

    assert done.status == TaskStatus.DONE
    assert _merges(fake_runner) == [("merge", "--no-ff", "--no-edit", "feature/T1")]
    assert orchestrator.repository.list_review_queue() == []

    with pytest.raises(NotInReviewError):
        orchestrator.approve_task("T1")
    assert len(_merges(fake_runner)) == 1


def test_approve_outside_review_never_merges(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")

    with pytest.raises(NotInReviewError):
        orchestrator.approve_task("T1", branch="feature/T1")
    assert _merges(fake_runner) == []


def test_failed_merge_leaves_task_in_review(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    orchestrator.submit_for_review("T1")
    fake_runner.fail("git", "merge")

    with pytest.raises(ExternalToolError):
        orchestrator.approve_task("T1")
    assert orchestrator.repository.get_task("T1").status == TaskStatus.REVIEW
    assert orchestrator.repository.list_review_queue() == ["T1"]


def test_reject_records_feedback_and_returns_to_todo(orchestrator, seed_task) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    orchestrator.submit_for_review("T1")

    rejected = orchestrator.reject_task("T1", "Needs work")

    assert rejected.status == TaskStatus.TODO
    feedback = orchestrator.repository.list_events("T1", event_type="review_feedback")
    assert [event.details["feedback"] for event in feedback] == ["Needs work"]
    assert orchestrator.repository.list_review_queue() == []


def test_reject_requires_feedback_and_review(orchestrator, seed_task) -> None:
    seed_task("T1")
    with pytest.raises(NotInReviewError):
        orchestrator.reject_task("T1", "Needs work")

    orchestrator.start_task("T1")
    orchestrator.submit_for_review("T1")
    with pytest.raises(ValidationError):
        orchestrator.reject_task("T1", "   ")
    assert orchestrator.repository.get_task("T1").status == TaskStatus.REVIEW


def test_closing_review_releases_task_reservations(orchestrator, seed_task) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    manager = ReservationManager(orchestrator.repository.engine)
    manager.acquire("src/app.py", "T1")
    manager.acquire("src/other.py", "tf-T1")
    manager.acquire("docs/readme.md", "someone-else")
    orchestrator.submit_for_review("T1")

    orchestrator.reject_task("T1", "Split this up")

    assert [item.path for item in manager.list_active()] == ["docs/readme.md"]


def test_reconcile_applies_done_and_blocked_markers(orchestrator, seed_task, layout) -> None:
    seed_task("T1")
    seed_task("T2")
    orchestrator.start_task("T1")
    orchestrator.start_task("T2")
    (layout.sessions_dir / "tf-T1.log").write_text("compiling\nSTATUS: done\n", "utf-8")
    (layout.sessions_dir / "tf-T2.log").write_text("TASKFORGE_STATUS=blocked\nwaiting", "utf-8")

    outcomes = {outcome.task_id: outcome for outcome in orchestrator.reconcile()}

    assert outcomes["T1"].task_status == TaskStatus.REVIEW
    assert outcomes["T1"].state == SessionState.DONE
    assert outcomes["T1"].new_lines == 2
    assert outcomes["T2"].task_status == TaskStatus.BLOCKED
    assert outcomes["T2"].state == SessionState.PAUSED
    assert orchestrator.repository.list_review_queue() == ["T1"]

    # only T2 is still polled; its partial trailing line is not consumed yet
    again = orchestrator.reconcile()
    assert [(outcome.task_id, outcome.new_lines) for outcome in again] == [("T2", 0)]

    resumed = orchestrator.resume_task("T2")
    assert resumed.session.state == SessionState.WORKING


def test_quick_task_generates_sequential_assigned_ids(orchestrator) -> None:
    first = orchestrator.quick_task("Fix login redirect\nUsers land on /404 after SSO.")
    second = orchestrator.quick_task("Second thing", assignee="agent-b")

    assert (first.task_id, first.status, first.title) == (
        "TASK-001",
        TaskStatus.ASSIGNED,
        "Fix login redirect",
    )
    assert first.summary == "Users land on /404 after SSO."
    assert (second.task_id, second.assignee) == ("TASK-002", "agent-b")
    with pytest.raises(ValidationError):
        orchestrator.quick_task("   ")


def test_assign_moves_todo_to_assigned(orchestrator, seed_task) -> None:
    seed_task("T1")

    task = orchestrator.assign_task("T1", "agent-a")

    assert (task.status, task.assignee) == (TaskStatus.ASSIGNED, "agent-a")
    assert orchestrator.assign_task("T1", "agent-b").assignee == "agent-b"


def test_reserve_touched_files_reports_conflicts(orchestrator, seed_task, fake_runner) -> None:
    seed_task("T1")
    orchestrator.start_task("T1")
    orchestrator.reservations.acquire("src/shared.py", "T9")
    fake_runner.status_output = " M src/shared.py\n?? src/new.py\n"

    conflicts = orchestrator.reserve_touched_files("T1")

    assert conflicts == ["src/shared.py"]
    owners = {item.path: item.owner for item in orchestrator.reservations.list_active()}
    assert owners == {"src/shared.py": "T9", "src/new.py": "T1"}


def test_cleanup_report_flags_orphans_without_touching_them(
    orchestrator,
    seed_task,
    layout,
    fake_runner,
) -> None:
    seed_task("T1")
    seed_task("T2")
    orchestrator.start_task("T1")
    orchestrator.start_task("T2")
    orchestrator.submit_for_review("T2")
    orchestrator.approve_task("T2")
    (layout.workspaces_root / "old-task").mkdir()
    fake_runner.live_sessions |= {"tf-ghost", "scratch"}
    fake_runner.calls.clear()

    report = orchestrator.cleanup_report()

    assert report.worktrees == ["T1", "T2", "old-task"]
    assert report.orphaned_worktrees == ["T2", "old-task"]
    assert report.sessions == ["tf-T1", "tf-T2", "tf-ghost"]
    assert report.orphaned_sessions == ["tf-T2", "tf-ghost"]
    assert fake_runner.commands("tmux") == [("list-sessions", "-F", "#{session_name}")]
    assert (layout.workspaces_root / "old-task").is_dir()
