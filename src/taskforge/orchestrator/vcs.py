"""Thin git adapter over the process runner."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from taskforge.orchestrator.errors import ExternalToolError, NotFoundError, ValidationError
from taskforge.orchestrator.models import DiffFileStat
from taskforge.orchestrator.runner import ProcessRunner, SubprocessRunner

logger = logging.getLogger(__name__)


def parse_numstat(output: str) -> list[DiffFileStat]:
    """Parse ``git diff --numstat``; binary files (``-``) count as zero lines."""

    stats: list[DiffFileStat] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, deleted, path = parts[0], parts[1], "\t".join(parts[2:])
        stats.append(
            DiffFileStat(
                path=path,
                added=int(added) if added.isdigit() else 0,
                deleted=int(deleted) if deleted.isdigit() else 0,
            ),
        )
    return stats


def validate_branch_name(branch: str) -> str:
    if (
        not branch
        or branch.startswith(("-", "/"))
        or ".." in branch
        or any(char.isspace() for char in branch)
        or any(char in branch for char in "~^:?*[\\")
    ):
        raise ValidationError(f"Invalid branch name: {branch!r}")
    return branch


def validate_repo_path(path: str) -> str:
    """Repo-relative file path as passed after ``--``."""

    candidate = PurePosixPath(path)
    if not path or candidate.is_absolute() or ".." in candidate.parts:
        raise ValidationError(f"Invalid repository path: {path!r}")
    return path


class GitClient:
    """git commands scoped to one repository (or worktree) directory."""

    def __init__(self, repo_root: Path, runner: ProcessRunner | None = None) -> None:
        self.repo_root = repo_root
        self.runner = runner or SubprocessRunner()

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        return self.runner.run("git", "-C", str(cwd or self.repo_root), *args)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def branch_exists(self, branch: str) -> bool:
        try:
            self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except ExternalToolError as error:
            if error.exit_code is None:
                raise
            return False
        return True

    def list_branches(self) -> list[str]:
        output = self._git("branch", "--list", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def find_branch_for_task(self, task_id: str, *, prefix: str = "feature/") -> str:
        """Exact ``<prefix><id>`` or ``<id>`` first, then any branch ending in ``/<id>``."""

        branches = self.list_branches()
        for exact in (f"{prefix}{task_id}", task_id):
            if exact in branches:
                return exact
        for branch in branches:
            if branch.rsplit("/", 1)[-1] == task_id:
                return branch
        raise NotFoundError(f"No branch found for task {task_id}.")

    def add_worktree(self, path: Path, branch: str, *, create_branch: bool) -> None:
        validate_branch_name(branch)
        if create_branch:
            self._git("worktree", "add", "-b", branch, str(path))
        else:
            self._git("worktree", "add", str(path), branch)

    def merge(self, branch: str, *, into: str | None = None) -> str:
        validate_branch_name(branch)
        if into is not None:
            validate_branch_name(into)
            self._git("checkout", into)
        output = self._git("merge", "--no-ff", "--no-edit", branch)
        logger.info("Merged %s into %s", branch, into or "current branch")
        return output

    def changed_files(self, workdir: Path | None = None) -> list[str]:
        """Paths with uncommitted changes in ``workdir`` (renames report the new path)."""

        output = self._git("status", "--porcelain=v1", "--untracked-files=all", cwd=workdir)
        paths: list[str] = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            paths.append(entry.strip("\""))
        return paths

    def diff_numstat(self, base: str, branch: str) -> list[DiffFileStat]:
        return parse_numstat(self._git("diff", "--numstat", f"{base}..{branch}"))

    def unified_diff(self, base: str, branch: str, path: str) -> str:
        validate_repo_path(path)
        return self._git("diff", f"{base}..{branch}", "--", path)

    def revert_file(
        self,
        path: str,
        *,
        base: str,
        branch: str,
        workdir: Path | None = None,
    ) -> None:
        """Restore ``path`` from ``base`` and commit on ``branch``.

        With ``workdir`` (the task's worktree, which already has ``branch``
        checked out) no checkout is done; otherwise ``branch`` is checked out
        in the repository root first.
        """

        validate_repo_path(path)
        validate_branch_name(base)
        validate_branch_name(branch)
        cwd = workdir or self.repo_root
        if workdir is None:
            self._git("checkout", branch)
        if self._exists_in(base, path):
            self._git("checkout", base, "--", path, cwd=cwd)
            self._git("add", "--", path, cwd=cwd)
        else:
            self._git("rm", "-q", "--", path, cwd=cwd)
        self._git("commit", "-m", f"chore: revert {path} to {base}", cwd=cwd)
        logger.info("Reverted %s on %s from %s", path, branch, base)

    def _exists_in(self, ref: str, path: str) -> bool:
        try:
            self._git("cat-file", "-e", f"{ref}:{path}")
        except ExternalToolError as error:
            if error.exit_code is None:
                raise
            return False
        return True
