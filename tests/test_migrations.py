from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from taskforge.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("State Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).all()
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name != 'alembic_version' ORDER BY name",
            ),
        ).all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert [row[0] for row in version] == ["20261018_0001"]
    assert [row[0] for row in tables] == [
        "message_deliveries",
        "messages",
        "reservations",
        "review_queue",
        "sessions",
        "task_events",
        "tasks",
    ]
    assert str(journal_mode).lower() == "wal"
    repository.close()


def test_one_non_stopped_session_per_task_is_enforced(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "sessions.db")
    repository.init_schema()
    insert_task = text(
        "INSERT INTO tasks (task_id, title, status, summary, mvp_override_acknowledged, "
        "created_at, updated_at) VALUES ('T1', 't', 'in_progress', '', 0, "
        "'2026-10-18 10:00:00', '2026-10-18 10:00:00')",
    )
    insert_session = (
        "INSERT INTO sessions (session_id, task_id, state, workdir, log_path, log_offset, "
        "created_at, updated_at) VALUES (:sid, 'T1', :state, '/w', '/l', 0, "
        "'2026-10-18 10:00:00', '2026-10-18 10:00:00')"
    )
    with repository.engine.begin() as connection:
        connection.execute(insert_task)
        connection.execute(text(insert_session), {"sid": "old", "state": "stopped"})
        connection.execute(text(insert_session), {"sid": "a", "state": "working"})

    with pytest.raises(IntegrityError), repository.engine.begin() as connection:
        connection.execute(text(insert_session), {"sid": "b", "state": "paused"})
    repository.close()
