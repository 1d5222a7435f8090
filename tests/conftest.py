"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from taskforge.orchestrator.errors import ExternalToolError
from taskforge.orchestrator.lifecycle import ProjectLayout, TaskLifecycleOrchestrator
from taskforge.orchestrator.models import TaskCreate
from taskforge.orchestrator.repository import OrchestratorRepository


class FakeRunner:
    """Records argv and emulates the git/tmux subset the engine uses."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.live_sessions: set[str] = set()
        self.branches: set[str] = {"main"}
        self.current_branch = "main"
        self.numstat = ""
        self.diffs: dict[str, str] = {}
        self.base_files: set[str] = set()
        self.status_output = ""
        self._failures: list[tuple[tuple[str, ...], int | None]] = []

    def fail(self, *prefix: str, exit_code: int | None = 1) -> None:
        """Make commands starting with ``prefix`` (git args after ``-C dir``) fail."""

        self._failures.append((prefix, exit_code))

    def commands(self, name: str) -> list[tuple[str, ...]]:
        return [self._strip(call)[1:] for call in self.calls if call[0] == name]

    def run(self, name: str, *args: str, cwd: Path | None = None) -> str:
        call = (name, *args)
        self.calls.append(call)
        stripped = self._strip(call)
        for prefix, exit_code in self._failures:
            if stripped[: len(prefix)] == prefix:
                raise ExternalToolError(
                    f"{' '.join(call)} failed",
                    command=call,
                    exit_code=exit_code,
                    output="simulated failure",
                )
        if name == "tmux":
            return self._tmux(args)
        if name == "git":
            return self._git(stripped[1:], workdir=Path(args[1]))
        return ""

    def _tmux(self, args: tuple[str, ...]) -> str:
        command = args[0]
        if command == "new-session":
            self.live_sessions.add(args[args.index("-s") + 1])
        elif command == "kill-session":
            self.live_sessions.discard(args[args.index("-t") + 1])
        elif command == "has-session":
            if args[args.index("-t") + 1] not in self.live_sessions:
                raise ExternalToolError("no such session", command=args, exit_code=1)
        elif command == "list-sessions":
            return "\n".join(sorted(self.live_sessions))
        return ""

    def _git(self, args: tuple[str, ...], *, workdir: Path) -> str:  # noqa: PLR0911
        if args[:2] == ("rev-parse", "--abbrev-ref"):
            return f"{self.current_branch}\n"
        if args[:3] == ("rev-parse", "--verify", "--quiet"):
            if args[3].removeprefix("refs/heads/") not in self.branches:
                raise ExternalToolError("unknown ref", command=args, exit_code=1)
            return ""
        if args[:2] == ("branch", "--list"):
            return "\n".join(sorted(self.branches))
        if args[:2] == ("worktree", "add"):
            if args[2] == "-b":
                self.branches.add(args[3])
                path = Path(args[4])
            else:
                path = Path(args[2])
            path.mkdir(parents=True, exist_ok=True)
            (path / ".git").write_text("gitdir: fake\n", "utf-8")
            return ""
        if args[:2] == ("diff", "--numstat"):
            return self.numstat
        if args and args[0] == "diff" and "--" in args:
            return self.diffs.get(args[-1], "")
        if args[:2] == ("cat-file", "-e"):
            if args[2].split(":", 1)[1] not in self.base_files:
                raise ExternalToolError("missing", command=args, exit_code=128)
            return ""
        if args and args[0] == "status":
            return self.status_output
        if args and args[0] == "checkout" and len(args) == 2:
            self.current_branch = args[1]
        return ""

    @staticmethod
    def _strip(call: tuple[str, ...]) -> tuple[str, ...]:
        if call[0] == "git" and len(call) > 2 and call[1] == "-C":
            return (call[0], *call[3:])
        return call


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "state.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def layout(tmp_path: Path) -> ProjectLayout:
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    return ProjectLayout(
        repo_root=repo_root,
        workspaces_root=tmp_path / "worktrees",
        sessions_dir=tmp_path / "sessions",
        base_branch="main",
    )


@pytest.fixture()
def orchestrator(
    repository: OrchestratorRepository,
    layout: ProjectLayout,
    fake_runner: FakeRunner,
) -> TaskLifecycleOrchestrator:
    return TaskLifecycleOrchestrator(repository, layout=layout, runner=fake_runner)


@pytest.fixture()
def seed_task(orchestrator: TaskLifecycleOrchestrator):
    def _seed(task_id: str = "T1", **overrides) -> str:
        payload = TaskCreate(title=overrides.pop("title", f"Task {task_id}"), task_id=task_id)
        for key, value in overrides.items():
            setattr(payload, key, value)
        orchestrator.create_task(payload)
        return task_id

    return _seed
