from __future__ import annotations

import os
import queue
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from taskforge.orchestrator.errors import (
    ErrorCategory,
    NotFoundError,
    ReservationConflictError,
    ValidationError,
)
from taskforge.orchestrator.repository import OrchestratorRepository
from taskforge.orchestrator.reservations import ReservationManager, normalize_reservation_path
from taskforge.storage.common import utc_now

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("File Reservations"),
]


def _acquire_thread(
    db_path: str,
    path: str,
    owner: str,
    start_event: threading.Event,
    result_queue: queue.Queue[tuple[str, str]],
) -> None:
    repository = OrchestratorRepository(Path(db_path), sqlite_busy_timeout_ms=10_000)
    manager = ReservationManager(repository.engine)
    start_event.wait(timeout=5)
    try:
        manager.acquire(path, owner, reason="stress")
        result_queue.put((owner, "granted"))
    except ReservationConflictError:
        result_queue.put((owner, "conflict"))
    except Exception as error:  # noqa: BLE001
        result_queue.put((owner, f"error:{type(error).__name__}:{error}"))
    finally:
        repository.close()


def test_acquire_and_conflict(repository) -> None:
    manager = ReservationManager(repository.engine)

    granted = manager.acquire("src/app.py", "agent-a", reason="refactor")

    assert granted.owner == "agent-a"
    assert granted.released_at is None
    with pytest.raises(ReservationConflictError) as error:
        manager.acquire("./src/app.py", "agent-b")
    assert error.value.category is ErrorCategory.CONFLICT
    assert error.value.holder is not None
    assert error.value.holder.owner == "agent-a"


def test_same_owner_reacquire_renews(repository) -> None:
    manager = ReservationManager(repository.engine)
    first = manager.acquire("src/app.py", "agent-a", ttl=timedelta(minutes=1))

    second = manager.acquire("src/app.py", "agent-a", ttl=timedelta(hours=2))

    assert second.reservation_id == first.reservation_id
    assert second.expires_at > first.expires_at


def test_expired_reservation_is_reclaimed(repository) -> None:
    manager = ReservationManager(repository.engine)
    past = utc_now() - timedelta(hours=3)
    manager.acquire("src/app.py", "agent-a", ttl=timedelta(minutes=5), now=past)

    assert manager.holder("src/app.py") is None
    taken = manager.acquire("src/app.py", "agent-b")
    assert taken.owner == "agent-b"


def test_release_by_non_owner_is_noop(repository) -> None:
    manager = ReservationManager(repository.engine)
    manager.acquire("src/app.py", "agent-a")

    assert manager.release("src/app.py", "agent-b") is False
    assert manager.holder("src/app.py") is not None
    assert manager.release("src/app.py", "agent-a") is True
    assert manager.holder("src/app.py") is None
    assert manager.release("src/app.py", "agent-a") is False


def test_list_active_is_newest_first_and_skips_released(repository) -> None:
    manager = ReservationManager(repository.engine)
    now = utc_now()
    manager.acquire("a.py", "agent-a", now=now - timedelta(seconds=30))
    manager.acquire("b.py", "agent-b", now=now - timedelta(seconds=20))
    manager.acquire("c.py", "agent-a", now=now - timedelta(seconds=10))
    manager.release("b.py", "agent-b")

    assert [item.path for item in manager.list_active()] == ["c.py", "a.py"]
    assert [item.path for item in manager.list_active(1)] == ["c.py"]
    assert [item.path for item in manager.list_active(owner="agent-b")] == []
    with pytest.raises(ValidationError):
        manager.list_active(0)


def test_acquire_many_collects_conflicts(repository) -> None:
    manager = ReservationManager(repository.engine)
    manager.acquire("shared.py", "agent-b")

    batch = manager.acquire_many(["mine.py", "shared.py"], "agent-a")

    assert [item.path for item in batch.granted] == ["mine.py"]
    assert [(item.path, item.owner) for item in batch.conflicts] == [("shared.py", "agent-b")]


def test_renew_and_force_release(repository) -> None:
    manager = ReservationManager(repository.engine)
    original = manager.acquire("src/app.py", "agent-a", ttl=timedelta(minutes=10))

    renewed = manager.renew("agent-a", [], extend=timedelta(hours=1))
    assert [item.path for item in renewed] == ["src/app.py"]
    assert renewed[0].expires_at >= original.expires_at + timedelta(minutes=59)

    released = manager.force_release(original.reservation_id)
    assert released.released_at is not None
    assert manager.list_active() == []
    with pytest.raises(NotFoundError):
        manager.force_release(999_999)


@pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.py", "src/../../x"])
def test_paths_must_be_repo_relative(path: str) -> None:
    with pytest.raises(ValidationError):
        normalize_reservation_path(path)


def test_normalization_collapses_equivalent_spellings() -> None:
    assert normalize_reservation_path("./src//app.py") == "src/app.py"
    assert normalize_reservation_path("src\\app.py") == "src/app.py"


def test_stress_concurrent_acquire_grants_exactly_one(tmp_path: Path) -> None:
    db_path = tmp_path / "reservations-stress.db"
    iterations = int(os.getenv("TASKFORGE_STRESS_ITERATIONS", "25"))
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    manager = ReservationManager(repository.engine)

    for index in range(iterations):
        path = f"src/contended_{index}.py"
        start_event = threading.Event()
        result_queue: queue.Queue[tuple[str, str]] = queue.Queue()
        threads = [
            threading.Thread(
                target=_acquire_thread,
                args=(str(db_path), path, owner, start_event, result_queue),
                daemon=True,
            )
            for owner in ("agent-a", "agent-b")
        ]
        for thread in threads:
            thread.start()
        start_event.set()
        for thread in threads:
            thread.join(timeout=15)
            assert thread.is_alive() is False

        results = dict(result_queue.get() for _ in threads)
        assert sorted(results.values()) == ["conflict", "granted"], results
        holder = manager.holder(path)
        assert holder is not None
        assert results[holder.owner] == "granted"

    repository.close()
