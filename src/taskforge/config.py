"""Runtime configuration for the task orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

STATE_DIR_NAME = ".taskforge"


class ConfigurationError(ValueError):
    """Invalid TASKFORGE_* setting."""


@dataclass(slots=True)
class WorkspaceSettings:
    """Worktree, branch and session naming settings."""

    workspaces_root: Path = Path(STATE_DIR_NAME) / "worktrees"
    sessions_dir: Path = Path(STATE_DIR_NAME) / "sessions"
    base_branch: str | None = None
    branch_prefix: str = "feature/"
    session_prefix: str = "tf-"


@dataclass(slots=True)
class ReservationSettings:
    """File reservation defaults."""

    default_ttl_seconds: int = 3_600
    list_limit: int = 50


@dataclass(slots=True)
class ReviewSettings:
    """Review workflow settings."""

    diff_page_size: int = 16


@dataclass(slots=True)
class IntakeSettings:
    """Quick task intake settings."""

    task_id_prefix: str = "TASK"
    operator_name: str = "operator"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_root: Path = Path(".")
    db_path: Path = Path(STATE_DIR_NAME) / "state.db"
    sqlite_busy_timeout_ms: int = 5_000
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    reservations: ReservationSettings = field(default_factory=ReservationSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    intake: IntakeSettings = field(default_factory=IntakeSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        project_root: Path | None = None,
    ) -> Settings:
        """Load settings from environment; relative paths resolve under the project root."""

        root = project_root or Path(os.getenv("TASKFORGE_PROJECT_ROOT", "."))
        root = root.resolve()
        state_dir = root / STATE_DIR_NAME
        base_branch = os.getenv("TASKFORGE_BASE_BRANCH", "").strip() or None
        settings = cls(
            project_root=root,
            db_path=db_path
            or _under_root(root, os.getenv("TASKFORGE_DB_PATH"), state_dir / "state.db"),
            sqlite_busy_timeout_ms=_env_int("TASKFORGE_SQLITE_BUSY_TIMEOUT_MS", 5000),
            workspace=WorkspaceSettings(
                workspaces_root=_under_root(
                    root,
                    os.getenv("TASKFORGE_WORKSPACES_ROOT"),
                    state_dir / "worktrees",
                ),
                sessions_dir=_under_root(
                    root,
                    os.getenv("TASKFORGE_SESSIONS_DIR"),
                    state_dir / "sessions",
                ),
                base_branch=base_branch,
                branch_prefix=os.getenv("TASKFORGE_BRANCH_PREFIX", "feature/"),
                session_prefix=os.getenv("TASKFORGE_SESSION_PREFIX", "tf-"),
            ),
            reservations=ReservationSettings(
                default_ttl_seconds=_env_int("TASKFORGE_RESERVATION_TTL_SECONDS", 3600),
                list_limit=_env_int("TASKFORGE_RESERVATION_LIST_LIMIT", 50),
            ),
            review=ReviewSettings(
                diff_page_size=_env_int("TASKFORGE_DIFF_PAGE_SIZE", 16),
            ),
            intake=IntakeSettings(
                task_id_prefix=os.getenv("TASKFORGE_TASK_ID_PREFIX", "TASK"),
                operator_name=os.getenv("TASKFORGE_OPERATOR", "operator"),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on invalid values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ConfigurationError("TASKFORGE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.reservations.default_ttl_seconds <= 0:
            raise ConfigurationError("TASKFORGE_RESERVATION_TTL_SECONDS must be > 0.")
        if self.reservations.list_limit <= 0:
            raise ConfigurationError("TASKFORGE_RESERVATION_LIST_LIMIT must be > 0.")
        if self.review.diff_page_size <= 0:
            raise ConfigurationError("TASKFORGE_DIFF_PAGE_SIZE must be > 0.")
        if not self.workspace.branch_prefix or self.workspace.branch_prefix.startswith("/"):
            raise ConfigurationError(
                "TASKFORGE_BRANCH_PREFIX must be a non-empty relative ref prefix, "
                f"got {self.workspace.branch_prefix!r}.",
            )
        if not self.workspace.session_prefix.strip():
            raise ConfigurationError("TASKFORGE_SESSION_PREFIX must not be empty.")
        if not self.intake.task_id_prefix.replace("_", "").isalnum():
            raise ConfigurationError(
                "TASKFORGE_TASK_ID_PREFIX must be alphanumeric, "
                f"got {self.intake.task_id_prefix!r}.",
            )

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME


def _under_root(root: Path, raw: str | None, default: Path) -> Path:
    if raw is None or not raw.strip():
        return default
    candidate = Path(raw.strip()).expanduser()
    if candidate.is_absolute():
        return candidate
    return root / candidate


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}.") from error
