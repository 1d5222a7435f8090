"""Persistent task, session and review-queue repository."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskforge.orchestrator.errors import ConflictError, NotFoundError, ValidationError
from taskforge.orchestrator.identifiers import validate_task_id
from taskforge.orchestrator.models import (
    SessionState,
    SessionView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from taskforge.orchestrator.state_machine import validate_transition
from taskforge.storage.alembic_runner import upgrade_head
from taskforge.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskforge.storage.sqlmodel_models import (
    ReviewQueueEntry,
    SessionRecord,
    TaskEventRecord,
    TaskRecord,
)


def story_hash(text: str) -> str:
    """Stable fingerprint of a user story, whitespace-normalized."""

    normalized = " ".join(text.split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class OrchestratorRepository:
    """Task/session persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        title = payload.title.strip()
        if not title:
            raise ValidationError("Task title must not be empty.")
        task_id = validate_task_id(payload.task_id or self.next_task_id("TASK"))
        now = utc_now()
        with Session(self.engine) as session:
            row = TaskRecord(
                task_id=task_id,
                title=title,
                status=payload.status.value,
                summary=payload.summary,
                acceptance_criteria_json=_dump_list(payload.acceptance_criteria),
                assignee=payload.assignee,
                user_story=payload.user_story,
                user_story_hash=story_hash(payload.user_story) if payload.user_story else None,
                mvp_included=payload.mvp_included,
                scope_paths_json=_dump_list(payload.scope_paths),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Events reference the task row, which has to reach SQLite first.
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Task already exists: {task_id}") from error
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=payload.status,
                details={"title": title},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def next_task_id(self, prefix: str) -> str:
        """Next free ``<prefix>-NNN`` id."""

        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        with Session(self.engine) as session:
            ids = session.exec(
                select(TaskRecord.task_id).where(col(TaskRecord.task_id).startswith(f"{prefix}-")),
            ).all()
        numbers = [int(match.group(1)) for task_id in ids if (match := pattern.match(task_id))]
        return f"{prefix}-{max(numbers, default=0) + 1:03d}"

    def find_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            return _to_task_view(row) if row is not None else None

    def get_task(self, task_id: str) -> TaskView:
        task = self.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 100) -> list[TaskView]:
        if limit <= 0:
            raise ValidationError(f"Task list limit must be > 0, got {limit}.")
        with Session(self.engine) as session:
            query = select(TaskRecord)
            if status is not None:
                query = query.where(TaskRecord.status == status.value)
            rows = session.exec(
                query.order_by(col(TaskRecord.created_at).asc(), col(TaskRecord.task_id).asc())
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            events = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.event_id).asc()),
            ).all()
            in_queue = session.get(ReviewQueueEntry, task_id) is not None
            session_row = self._latest_session_row(session=session, task_id=task_id)
            return TaskDetails(
                task=_to_task_view(row),
                events=[_to_event_view(event) for event in events],
                session=_to_session_view(session_row) if session_row is not None else None,
                in_review_queue=in_queue,
            )

    def list_events(self, task_id: str, *, event_type: str | None = None) -> list[TaskEventView]:
        with Session(self.engine) as session:
            query = select(TaskEventRecord).where(TaskEventRecord.task_id == task_id)
            if event_type is not None:
                query = query.where(TaskEventRecord.event_type == event_type)
            rows = session.exec(query.order_by(col(TaskEventRecord.event_id).asc())).all()
            return [_to_event_view(row) for row in rows]

    def add_task_event(self, task_id: str, *, event_type: str, details: dict[str, object]) -> None:
        """Append an audit entry without changing status."""

        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def transition(
        self,
        task_id: str,
        *,
        target: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
        values: dict[str, Any] | None = None,
    ) -> TaskView:
        """Move a task along the transition table, optionally updating columns."""

        with Session(self.engine) as session:
            self._transition_in_session(
                session=session,
                task_id=task_id,
                target=target,
                event_type=event_type,
                details=details or {},
                values=values or {},
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def set_assignee(self, task_id: str, assignee: str | None) -> TaskView:
        return self._update_columns(
            task_id,
            values={"assignee": assignee},
            event_type="assignee_changed",
            details={"assignee": assignee},
        )

    def acknowledge_override(self, task_id: str, *, actor: str) -> TaskView:
        return self._update_columns(
            task_id,
            values={"mvp_override_acknowledged": True},
            event_type="mvp_override_acknowledged",
            details={"actor": actor},
        )

    def update_user_story(self, task_id: str, text: str) -> TaskView:
        """Replace the user story and re-baseline its hash."""

        return self._update_columns(
            task_id,
            values={"user_story": text, "user_story_hash": story_hash(text)},
            event_type="user_story_updated",
            details={"hash": story_hash(text)},
        )

    # Review queue

    def list_review_queue(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ReviewQueueEntry).order_by(col(ReviewQueueEntry.enqueued_at).asc()),
            ).all()
            return [row.task_id for row in rows]

    def submit_for_review(self, task_id: str, *, details: dict[str, object]) -> TaskView:
        """in_progress -> review, enqueue, and mark the active session done."""

        now = utc_now()
        with Session(self.engine) as session:
            self._transition_in_session(
                session=session,
                task_id=task_id,
                target=TaskStatus.REVIEW,
                event_type="submitted_for_review",
                details=details,
                values={},
            )
            if session.get(ReviewQueueEntry, task_id) is None:
                session.add(ReviewQueueEntry(task_id=task_id, enqueued_at=now))
            active = self._active_session_row(session=session, task_id=task_id)
            if active is not None and active.state != SessionState.DONE.value:
                active.state = SessionState.DONE.value
                active.updated_at = now
                session.add(active)
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def close_review(
        self,
        task_id: str,
        *,
        target: TaskStatus,
        event_type: str,
        details: dict[str, object],
    ) -> TaskView:
        """review -> done/todo, dequeue and retire the session in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            self._transition_in_session(
                session=session,
                task_id=task_id,
                target=target,
                event_type=event_type,
                details=details,
                values={},
            )
            session.exec(
                sa_delete(ReviewQueueEntry).where(col(ReviewQueueEntry.task_id) == task_id),
            )
            active = self._active_session_row(session=session, task_id=task_id)
            if active is not None:
                active.state = SessionState.STOPPED.value
                active.updated_at = now
                session.add(active)
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    # Sessions

    def record_start(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        session_id: str,
        workdir: str,
        log_path: str,
        branch: str,
        log_offset: int = 0,
    ) -> tuple[TaskView, SessionView]:
        """Persist task -> in_progress together with a working session."""

        now = utc_now()
        with Session(self.engine) as session:
            active = self._active_session_row(session=session, task_id=task_id)
            if active is not None and active.session_id != session_id:
                if active.state in {SessionState.WORKING.value, SessionState.PAUSED.value}:
                    raise ConflictError(
                        f"Task {task_id} already has active session {active.session_id}.",
                    )
                active.state = SessionState.STOPPED.value
                active.updated_at = now
                session.add(active)
                session.flush()

            self._transition_in_session(
                session=session,
                task_id=task_id,
                target=TaskStatus.IN_PROGRESS,
                event_type="started",
                details={"session_id": session_id, "branch": branch, "workdir": workdir},
                values={"branch": branch, "worktree_path": workdir},
            )
            row = session.get(SessionRecord, session_id)
            if row is None:
                row = SessionRecord(
                    session_id=session_id,
                    task_id=task_id,
                    state=SessionState.WORKING.value,
                    workdir=workdir,
                    log_path=log_path,
                    log_offset=log_offset,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.state = SessionState.WORKING.value
                row.workdir = workdir
                row.log_path = log_path
                row.log_offset = log_offset
                row.updated_at = now
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Task {task_id} already has a non-stopped session.",
                ) from error
            session.refresh(row)
            task_row = self._get_task_row(session=session, task_id=task_id)
            return _to_task_view(task_row), _to_session_view(row)

    def record_stop(self, task_id: str, *, session_id: str) -> TaskView:
        """Session -> stopped and task in_progress -> blocked (already blocked is kept)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(SessionRecord, session_id)
            if row is not None and row.state != SessionState.STOPPED.value:
                row.state = SessionState.STOPPED.value
                row.updated_at = now
                session.add(row)
            task_row = self._get_task_row(session=session, task_id=task_id)
            if task_row.status != TaskStatus.BLOCKED.value:
                self._transition_in_session(
                    session=session,
                    task_id=task_id,
                    target=TaskStatus.BLOCKED,
                    event_type="stopped",
                    details={"session_id": session_id},
                    values={},
                )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def get_session(self, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.get(SessionRecord, session_id)
            return _to_session_view(row) if row is not None else None

    def find_session_by_task(self, task_id: str) -> SessionView | None:
        """Non-stopped session if any, else the most recently updated one."""

        with Session(self.engine) as session:
            row = self._latest_session_row(session=session, task_id=task_id)
            return _to_session_view(row) if row is not None else None

    def list_sessions(
        self,
        *,
        states: Iterable[SessionState] | None = None,
    ) -> list[SessionView]:
        with Session(self.engine) as session:
            query = select(SessionRecord)
            if states is not None:
                query = query.where(
                    col(SessionRecord.state).in_([state.value for state in states]),
                )
            rows = session.exec(query.order_by(col(SessionRecord.created_at).asc())).all()
            return [_to_session_view(row) for row in rows]

    def update_session(
        self,
        session_id: str,
        *,
        state: SessionState | None = None,
        log_offset: int | None = None,
    ) -> SessionView:
        with Session(self.engine) as session:
            row = session.get(SessionRecord, session_id)
            if row is None:
                raise NotFoundError(f"Session not found: {session_id}")
            if state is not None:
                row.state = state.value
            if log_offset is not None:
                row.log_offset = log_offset
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    # Internals

    def _update_columns(
        self,
        task_id: str,
        *,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> TaskView:
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = utc_now()
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def _transition_in_session(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        target: TaskStatus,
        event_type: str,
        details: dict[str, object],
        values: dict[str, Any],
    ) -> None:
        row = self._get_task_row(session=session, task_id=task_id)
        current = TaskStatus(row.status)
        validate_transition(task_id, current, target)
        result = session.exec(
            sa_update(TaskRecord)
            .where(
                col(TaskRecord.task_id) == task_id,
                col(TaskRecord.status) == current.value,
            )
            .values(
                status=target.value,
                updated_at=to_db_datetime(utc_now()),
                **values,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError(f"Task status changed concurrently: {task_id}")
        session.expire(row)
        self._add_event(
            session=session,
            task_id=task_id,
            event_type=event_type,
            status_from=current,
            status_to=target,
            details=details,
        )

    def _get_task_row(self, *, session: Session, task_id: str) -> TaskRecord:
        row = session.get(TaskRecord, task_id)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _active_session_row(self, *, session: Session, task_id: str) -> SessionRecord | None:
        return session.exec(
            select(SessionRecord).where(
                SessionRecord.task_id == task_id,
                SessionRecord.state != SessionState.STOPPED.value,
            ),
        ).first()

    def _latest_session_row(self, *, session: Session, task_id: str) -> SessionRecord | None:
        active = self._active_session_row(session=session, task_id=task_id)
        if active is not None:
            return active
        return session.exec(
            select(SessionRecord)
            .where(SessionRecord.task_id == task_id)
            .order_by(col(SessionRecord.updated_at).desc())
            .limit(1),
        ).first()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _dump_list(values: Iterable[str]) -> str | None:
    items = [value for value in values if value]
    return json.dumps(items, ensure_ascii=False) if items else None


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [str(item) for item in json.loads(raw)]


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        status=TaskStatus(row.status),
        summary=row.summary,
        acceptance_criteria=_load_list(row.acceptance_criteria_json),
        assignee=row.assignee,
        user_story=row.user_story,
        user_story_hash=row.user_story_hash,
        mvp_included=row.mvp_included,
        scope_paths=_load_list(row.scope_paths_json),
        mvp_override_acknowledged=bool(row.mvp_override_acknowledged),
        branch=row.branch,
        worktree_path=row.worktree_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: TaskEventRecord) -> TaskEventView:
    return TaskEventView(
        event_id=row.event_id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=json.loads(row.details_json) if row.details_json else {},
    )


def _to_session_view(row: SessionRecord) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        task_id=row.task_id,
        state=SessionState(row.state),
        workdir=row.workdir,
        log_path=row.log_path,
        log_offset=row.log_offset,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
