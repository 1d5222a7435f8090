from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskforge import main as cli_main
from taskforge.main import taskforge

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Operator Commands"),
]


@pytest.fixture()
def cli(tmp_path: Path, monkeypatch, fake_runner):
    monkeypatch.setenv("TASKFORGE_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("TASKFORGE_BASE_BRANCH", "main")
    monkeypatch.setattr(cli_main.ORCHESTRATOR_CONTROLLER, "runner", fake_runner)
    runner = CliRunner()

    def _invoke(*args: str, expect_exit: int = 0):
        result = runner.invoke(taskforge, list(args))
        assert result.exit_code == expect_exit, result.output
        return result

    return _invoke


def test_init_creates_state_dir(cli, tmp_path: Path) -> None:
    result = cli("init")

    assert "Initialized taskforge state" in result.output
    assert (tmp_path / ".taskforge" / "state.db").exists()
    assert (tmp_path / ".taskforge" / "worktrees").is_dir()


def test_task_create_list_and_show(cli) -> None:
    created = cli(
        "task",
        "create",
        "--title",
        "Add login page",
        "--task-id",
        "T1",
        "--criterion",
        "form validates email",
        "--scope",
        "src/",
    )
    assert "Task created: task_id=T1 status=todo" in created.output

    quick = cli("task", "quick", "Fix flaky test\nseen on CI")
    assert "task_id=TASK-001 status=assigned" in quick.output

    listed = cli("task", "list", "--status", "assigned")
    assert "Tasks: 1" in listed.output
    assert "TASK-001 status=assigned" in listed.output

    shown = cli("task", "show", "T1")
    assert "Status: todo" in shown.output
    assert "created - -> todo" in shown.output


def test_task_start_stop_resume(cli, fake_runner) -> None:
    cli("task", "create", "--title", "Build it", "--task-id", "T1")

    started = cli("task", "start", "T1")
    assert "Task started: T1 status=in_progress" in started.output
    assert "Branch: feature/T1" in started.output
    assert "tf-T1" in fake_runner.live_sessions

    stopped = cli("task", "stop", "T1")
    assert "status=blocked" in stopped.output
    assert "tf-T1" not in fake_runner.live_sessions

    resumed = cli("task", "resume", "T1")
    assert "session=tf-T1" in resumed.output


def test_task_cleanup_is_a_dry_run(cli, fake_runner, tmp_path: Path) -> None:
    cli("task", "create", "--title", "Build it", "--task-id", "T1")
    cli("task", "start", "T1")
    fake_runner.live_sessions.add("tf-ghost")

    result = cli("task", "cleanup")

    assert "Worktrees: 1" in result.output
    assert "   - T1\n" in result.output
    assert "tf-ghost (orphaned)" in result.output
    assert "No changes applied." in result.output
    assert "tf-ghost" in fake_runner.live_sessions
    assert (tmp_path / ".taskforge" / "worktrees" / "T1").is_dir()


def test_engine_errors_exit_non_zero(cli, fake_runner) -> None:
    missing = cli("task", "start", "T9", expect_exit=1)
    assert "not_found" in missing.output

    invalid = cli("task", "start", "../T9", expect_exit=1)
    assert "validation" in invalid.output
    assert fake_runner.calls == []

    cli("task", "create", "--title", "Build it", "--task-id", "T1")
    not_in_review = cli("task", "approve", "T1", expect_exit=1)
    assert "conflict" in not_in_review.output


def test_review_gate_then_override(cli, fake_runner) -> None:
    cli("task", "create", "--title", "Scoped", "--task-id", "T1", "--scope", "src/")
    cli("task", "start", "T1")
    cli("task", "submit", "T1")
    fake_runner.numstat = "2\t0\tsrc/app.py\n1\t1\tMakefile\n"
    fake_runner.diffs = {"src/app.py": "+line one\n+line two"}

    shown = cli("review", "show", "T1")
    assert "Alignment: out" in shown.output
    assert "Makefile +1 -1" in shown.output

    diff = cli("review", "diff", "T1")
    assert "+line two" in diff.output

    blocked = cli("review", "approve", "T1", expect_exit=1)
    assert "conflict" in blocked.output

    cli("review", "accept", "T1")
    approved = cli("review", "approve", "T1")
    assert "Task approved: T1 status=done" in approved.output


def test_task_approve_applies_scope_gate(cli, fake_runner) -> None:
    cli("task", "create", "--title", "Scoped", "--task-id", "T1", "--scope", "src/")
    cli("task", "start", "T1")
    cli("task", "submit", "T1")
    fake_runner.numstat = "1\t1\tMakefile\n"

    blocked = cli("task", "approve", "T1", expect_exit=1)
    assert "conflict" in blocked.output
    assert [call for call in fake_runner.commands("git") if call[0] == "merge"] == []

    cli("review", "explain", "T1", "Build fix needed for the demo")
    approved = cli("task", "approve", "T1")
    assert "Task approved: T1 status=done" in approved.output
    assert [call for call in fake_runner.commands("git") if call[0] == "merge"] == [
        ("merge", "--no-ff", "--no-edit", "feature/T1"),
    ]


def test_review_feedback_and_reject(cli) -> None:
    cli("task", "create", "--title", "Scoped", "--task-id", "T1")
    cli("task", "start", "T1")
    cli("task", "submit", "T1")

    cli("review", "reject", "T1", expect_exit=1)
    assert "feedback saved" in cli("review", "feedback", "T1", "Needs work").output
    assert "rejected T1" in cli("review", "reject", "T1").output
    assert "Status: todo" in cli("task", "show", "T1").output


def test_lock_commands(cli) -> None:
    first = cli("lock", "acquire", "--owner", "agent-a", "--reason", "ping @agent-b", "src/app.py")
    assert "Granted: 1 Conflicts: 0" in first.output

    second = cli("lock", "acquire", "--owner", "agent-b", "src/app.py", "src/other.py")
    assert "Granted: 1 Conflicts: 1" in second.output
    assert "conflict src/app.py held by agent-a" in second.output

    mine = cli("lock", "list", "--scope", "me", "--me", "agent-a")
    assert "Active reservations: 1" in mine.output
    mentions = cli("lock", "list", "--scope", "mentions", "--me", "agent-b")
    assert "src/app.py owner=agent-a" in mentions.output

    released = cli("lock", "release", "--owner", "agent-b", "src/app.py")
    assert "Released: 0" in released.output
    assert "Renewed: 1" in cli("lock", "renew", "--owner", "agent-a").output
    assert "Force-released #1 src/app.py" in cli("lock", "force-release", "1").output


def test_mail_commands(cli) -> None:
    sent = cli(
        "mail",
        "send",
        "--from",
        "alice",
        "--to",
        "bob",
        "--subject",
        "Build broken",
        "--importance",
        "urgent",
    )
    message_id = sent.output.split("Message sent: ", 1)[1].split()[0]

    inbox = cli("mail", "inbox", "--urgent", "bob")
    assert "Inbox bob: 1" in inbox.output
    assert f"{message_id} [urgent] new" in inbox.output

    cli("mail", "ack", message_id, "bob")
    assert "new" not in cli("mail", "inbox", "bob").output.split("\n", 1)[1]

    assert "Matches: 1" in cli("mail", "search", "broken").output
    thread = cli("mail", "thread", message_id)
    assert "Participants: alice, bob" in thread.output
    cli("mail", "read", message_id, "carol", expect_exit=1)


def test_invalid_configuration_is_reported(cli, monkeypatch) -> None:
    monkeypatch.setenv("TASKFORGE_DIFF_PAGE_SIZE", "0")

    result = cli("task", "list", expect_exit=1)

    assert "TASKFORGE_DIFF_PAGE_SIZE" in result.output


def test_unexpected_value_errors_are_not_reported_as_configuration(cli, monkeypatch) -> None:
    def _broken(command):
        raise ValueError("bad internal state")

    monkeypatch.setattr(cli_main.ORCHESTRATOR_CONTROLLER, "list_tasks", _broken)

    result = cli("task", "list", expect_exit=1)

    assert isinstance(result.exception, ValueError)
    assert "configuration" not in result.output
