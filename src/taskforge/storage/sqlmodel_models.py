"""SQLModel ORM tables for the orchestration state database."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    title: str
    status: str = Field(index=True)
    summary: str = ""
    acceptance_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    assignee: str | None = None
    user_story: str | None = Field(default=None, sa_column=Column(Text))
    user_story_hash: str | None = None
    mvp_included: bool | None = None
    scope_paths_json: str | None = Field(default=None, sa_column=Column(Text))
    mvp_override_acknowledged: bool = False
    branch: str | None = None
    worktree_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionRecord(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_sessions_task_not_stopped",
            "task_id",
            unique=True,
            sqlite_where=text("state != 'stopped'"),
        ),
    )

    session_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    state: str
    workdir: str
    log_path: str
    log_offset: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewQueueEntry(SQLModel, table=True):
    __tablename__ = "review_queue"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReservationRecord(SQLModel, table=True):
    __tablename__ = "reservations"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_reservations_active_path",
            "path",
            unique=True,
            sqlite_where=text("released_at IS NULL"),
        ),
        Index("idx_reservations_owner", "owner"),
    )

    reservation_id: int | None = Field(default=None, primary_key=True)
    path: str
    owner: str
    reason: str = ""
    exclusive: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    released_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class MessageRecord(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_created", "created_at", "message_id"),)

    message_id: str = Field(primary_key=True)
    thread_id: str = Field(index=True)
    sender: str
    subject: str = ""
    body: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    importance: str = "normal"
    ack_required: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MessageDeliveryRecord(SQLModel, table=True):
    __tablename__ = "message_deliveries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "message_id",
            "recipient",
            name="uq_message_deliveries_message_recipient",
        ),
    )

    delivery_id: int | None = Field(default=None, primary_key=True)
    message_id: str = Field(
        sa_column=Column(
            ForeignKey("messages.message_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    recipient: str = Field(index=True)
    delivered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    read_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ack_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
