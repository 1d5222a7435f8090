from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskforge.config import ConfigurationError, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_live_under_project_state_dir(tmp_path: Path, monkeypatch) -> None:
    for name in ("TASKFORGE_DB_PATH", "TASKFORGE_WORKSPACES_ROOT", "TASKFORGE_BASE_BRANCH"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env(project_root=tmp_path)

    assert settings.project_root == tmp_path.resolve()
    assert settings.db_path == tmp_path.resolve() / ".taskforge" / "state.db"
    assert settings.workspace.workspaces_root == tmp_path.resolve() / ".taskforge" / "worktrees"
    assert settings.workspace.sessions_dir == tmp_path.resolve() / ".taskforge" / "sessions"
    assert settings.workspace.base_branch is None
    assert settings.workspace.branch_prefix == "feature/"
    assert settings.reservations.default_ttl_seconds == 3600
    assert settings.review.diff_page_size == 16


def test_environment_overrides_and_relative_paths(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKFORGE_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("TASKFORGE_WORKSPACES_ROOT", "trees")
    monkeypatch.setenv("TASKFORGE_BASE_BRANCH", " develop ")
    monkeypatch.setenv("TASKFORGE_RESERVATION_TTL_SECONDS", "120")
    monkeypatch.setenv("TASKFORGE_TASK_ID_PREFIX", "JOB")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.workspace.workspaces_root == tmp_path.resolve() / "trees"
    assert settings.workspace.base_branch == "develop"
    assert settings.reservations.default_ttl_seconds == 120
    assert settings.intake.task_id_prefix == "JOB"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TASKFORGE_SQLITE_BUSY_TIMEOUT_MS", "0"),
        ("TASKFORGE_RESERVATION_TTL_SECONDS", "-5"),
        ("TASKFORGE_DIFF_PAGE_SIZE", "0"),
        ("TASKFORGE_RESERVATION_LIST_LIMIT", "ten"),
        ("TASKFORGE_BRANCH_PREFIX", "/abs"),
        ("TASKFORGE_TASK_ID_PREFIX", "A/B"),
    ],
)
def test_invalid_values_name_the_variable(
    tmp_path: Path,
    monkeypatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env(project_root=tmp_path)
