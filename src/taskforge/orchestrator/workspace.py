"""Per-task git worktrees under a single workspaces root."""

from __future__ import annotations

import logging
from pathlib import Path

from taskforge.orchestrator.errors import ValidationError
from taskforge.orchestrator.identifiers import is_within, safe_join, validate_task_id
from taskforge.orchestrator.runner import ProcessRunner, SubprocessRunner
from taskforge.orchestrator.vcs import GitClient, validate_branch_name

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates deterministic per-task worktree layout."""

    def __init__(self, workspaces_root: Path, runner: ProcessRunner | None = None) -> None:
        self.workspaces_root = workspaces_root
        self.runner = runner or SubprocessRunner()

    def path_for(self, task_id: str) -> Path:
        return safe_join(self.workspaces_root, validate_task_id(task_id))

    def create(self, repo_root: Path, path: Path, branch: str) -> Path:
        """Check out ``branch`` (created if absent) into ``path``.

        An existing worktree at ``path`` is reused, which is how a blocked
        task resumes in place.
        """

        if not is_within(path, self.workspaces_root) or (
            path.resolve() == self.workspaces_root.resolve()
        ):
            raise ValidationError(
                f"Workspace path {path} is outside workspaces root {self.workspaces_root}.",
            )
        validate_branch_name(branch)

        if (path / ".git").exists():
            logger.info("Reusing worktree %s", path)
            return path

        git = GitClient(repo_root, runner=self.runner)
        create_branch = not git.branch_exists(branch)
        path.parent.mkdir(parents=True, exist_ok=True)
        git.add_worktree(path, branch, create_branch=create_branch)
        logger.info(
            "Created worktree %s on %s%s",
            path,
            branch,
            " (new branch)" if create_branch else "",
        )
        return path
