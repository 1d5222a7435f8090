"""Task id validation and deterministic branch/session/path naming."""

from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

from taskforge.orchestrator.errors import ValidationError

MAX_TASK_ID_LENGTH = 64
_TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_task_id(task_id: str) -> str:
    """Return ``task_id`` unchanged or raise ValidationError.

    Ids become directory names, branch names and tmux targets, so only
    ``[A-Za-z0-9_-]`` up to 64 characters pass.
    """

    if not task_id:
        raise ValidationError("Task id must not be empty.")
    if len(task_id) > MAX_TASK_ID_LENGTH:
        raise ValidationError(
            f"Task id is longer than {MAX_TASK_ID_LENGTH} characters: {task_id[:16]!r}...",
        )
    if ".." in task_id or "/" in task_id or "\\" in task_id:
        raise ValidationError(f"Task id must not contain path separators or '..': {task_id!r}")
    if not _TASK_ID_RE.fullmatch(task_id):
        raise ValidationError(f"Task id has invalid characters: {task_id!r}")
    return task_id


def branch_for_task(task_id: str, *, prefix: str = "feature/") -> str:
    return f"{prefix}{validate_task_id(task_id)}"


def session_id_for_task(task_id: str, *, prefix: str = "tf-") -> str:
    return f"{prefix}{validate_task_id(task_id)}"


def safe_join(root: Path, relative: str) -> Path:
    """Join a relative path under ``root``; absolute paths and ``..`` escapes are rejected."""

    if not relative:
        raise ValidationError("Path must not be empty.")
    candidate = PurePosixPath(relative.replace("\\", "/"))
    if candidate.is_absolute() or Path(relative).is_absolute():
        raise ValidationError(f"Path must be relative: {relative!r}")
    if any(part == ".." for part in candidate.parts):
        raise ValidationError(f"Path must not escape its root: {relative!r}")
    return root.joinpath(*candidate.parts)


def is_within(path: Path, root: Path) -> bool:
    """Lexical containment check after resolving both sides."""

    resolved_root = root.resolve()
    resolved = path.resolve()
    return resolved == resolved_root or resolved_root in resolved.parents
