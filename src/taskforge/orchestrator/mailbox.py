"""Agent/operator mailbox: immutable messages fanned out as per-recipient deliveries."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskforge.orchestrator.errors import ConflictError, NotFoundError, ValidationError
from taskforge.orchestrator.models import (
    Importance,
    InboxEntry,
    InboxPage,
    MessageSend,
    MessageView,
    RecipientScope,
    ReservationView,
    ThreadSummary,
)
from taskforge.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskforge.storage.sqlmodel_models import MessageDeliveryRecord, MessageRecord

logger = logging.getLogger(__name__)

_PAGE_TOKEN_SEPARATOR = "|"


class Mailbox:
    """Send and query messages stored alongside orchestration state."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def send(self, payload: MessageSend) -> MessageView:
        sender = payload.sender.strip()
        if not sender:
            raise ValidationError("Message sender must not be empty.")
        recipients = _unique_recipients(payload.recipients)
        if not recipients:
            raise ValidationError("Message needs at least one recipient.")

        now = utc_now()
        message_id = payload.message_id or uuid4().hex
        thread_id = payload.thread_id or message_id
        with Session(self.engine) as session:
            row = MessageRecord(
                message_id=message_id,
                thread_id=thread_id,
                sender=sender,
                subject=payload.subject,
                body=payload.body,
                importance=payload.importance.value,
                ack_required=payload.ack_required,
                created_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Message already exists: {message_id}") from error
            for recipient in recipients:
                session.add(
                    MessageDeliveryRecord(
                        message_id=message_id,
                        recipient=recipient,
                        delivered_at=now,
                    ),
                )
            session.commit()
            session.refresh(row)
            logger.info(
                "Message %s from %s to %s (importance=%s)",
                message_id,
                sender,
                ", ".join(recipients),
                payload.importance.value,
            )
            return _to_message_view(row, recipients)

    def inbox(  # noqa: PLR0913
        self,
        recipient: str,
        *,
        limit: int = 50,
        urgent_only: bool = False,
        since: datetime | None = None,
        page_token: str | None = None,
    ) -> InboxPage:
        """Deliveries for ``recipient``, newest first, with an opaque continuation token."""

        if limit <= 0:
            raise ValidationError(f"Inbox limit must be > 0, got {limit}.")
        with Session(self.engine) as session:
            query = (
                select(MessageDeliveryRecord, MessageRecord)
                .join(
                    MessageRecord,
                    col(MessageRecord.message_id) == col(MessageDeliveryRecord.message_id),
                )
                .where(MessageDeliveryRecord.recipient == recipient)
            )
            if urgent_only:
                query = query.where(MessageRecord.importance == Importance.URGENT.value)
            if since is not None:
                query = query.where(col(MessageRecord.created_at) > to_db_datetime(since))
            if page_token:
                cursor_at, cursor_id = _decode_page_token(page_token)
                query = query.where(
                    or_(
                        col(MessageRecord.created_at) < cursor_at,
                        and_(
                            col(MessageRecord.created_at) == cursor_at,
                            col(MessageRecord.message_id) < cursor_id,
                        ),
                    ),
                )
            rows = session.exec(
                query.order_by(
                    col(MessageRecord.created_at).desc(),
                    col(MessageRecord.message_id).desc(),
                ).limit(limit + 1),
            ).all()

            has_more = len(rows) > limit
            rows = rows[:limit]
            recipients_by_message = self._recipients_for(
                session=session,
                message_ids=[message.message_id for _, message in rows],
            )
            entries = [
                InboxEntry(
                    message=_to_message_view(
                        message,
                        recipients_by_message.get(message.message_id, []),
                    ),
                    recipient=delivery.recipient,
                    delivered_at=to_utc_aware_datetime(delivery.delivered_at),
                    read_at=optional_utc(delivery.read_at),
                    ack_at=optional_utc(delivery.ack_at),
                )
                for delivery, message in rows
            ]
        next_token = None
        if has_more and entries:
            last = entries[-1].message
            next_token = _encode_page_token(last.created_at, last.message_id)
        return InboxPage(entries=entries, next_page_token=next_token)

    def mark_read(self, message_id: str, recipient: str) -> None:
        self._touch_delivery(message_id, recipient, acknowledge=False)

    def acknowledge(self, message_id: str, recipient: str) -> None:
        """Ack implies read."""

        self._touch_delivery(message_id, recipient, acknowledge=True)

    def get_message(self, message_id: str) -> MessageView:
        with Session(self.engine) as session:
            row = session.get(MessageRecord, message_id)
            if row is None:
                raise NotFoundError(f"Message not found: {message_id}")
            recipients = self._recipients_for(session=session, message_ids=[message_id])
            return _to_message_view(row, recipients.get(message_id, []))

    def search(self, text: str, *, limit: int = 20) -> list[MessageView]:
        """Substring match on subject, body and sender, newest first."""

        if limit <= 0:
            raise ValidationError(f"Search limit must be > 0, got {limit}.")
        needle = text.strip()
        if not needle:
            return []
        pattern = "%" + needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        with Session(self.engine) as session:
            rows = session.exec(
                select(MessageRecord)
                .where(
                    or_(
                        col(MessageRecord.subject).like(pattern, escape="\\"),
                        col(MessageRecord.body).like(pattern, escape="\\"),
                        col(MessageRecord.sender).like(pattern, escape="\\"),
                    ),
                )
                .order_by(col(MessageRecord.created_at).desc(), col(MessageRecord.message_id).desc())
                .limit(limit),
            ).all()
            recipients = self._recipients_for(
                session=session,
                message_ids=[row.message_id for row in rows],
            )
            return [_to_message_view(row, recipients.get(row.message_id, [])) for row in rows]

    def list_thread(self, thread_id: str) -> list[MessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MessageRecord)
                .where(MessageRecord.thread_id == thread_id)
                .order_by(col(MessageRecord.created_at).asc(), col(MessageRecord.message_id).asc()),
            ).all()
            recipients = self._recipients_for(
                session=session,
                message_ids=[row.message_id for row in rows],
            )
            return [_to_message_view(row, recipients.get(row.message_id, [])) for row in rows]

    def thread_summary(self, thread_id: str) -> ThreadSummary:
        messages = self.list_thread(thread_id)
        if not messages:
            raise NotFoundError(f"Thread not found: {thread_id}")
        participants: list[str] = []
        for message in messages:
            for name in (message.sender, *message.recipients):
                if name not in participants:
                    participants.append(name)
        return ThreadSummary(
            thread_id=thread_id,
            message_count=len(messages),
            participants=participants,
            first_at=messages[0].created_at,
            last_at=messages[-1].created_at,
            last_subject=messages[-1].subject,
        )

    def _touch_delivery(self, message_id: str, recipient: str, *, acknowledge: bool) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(MessageDeliveryRecord).where(
                    MessageDeliveryRecord.message_id == message_id,
                    MessageDeliveryRecord.recipient == recipient,
                ),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Message not found: {message_id} for {recipient}")
            if row.read_at is None:
                row.read_at = now
            if acknowledge and row.ack_at is None:
                row.ack_at = now
            session.add(row)
            session.commit()

    def _recipients_for(
        self,
        *,
        session: Session,
        message_ids: Sequence[str],
    ) -> dict[str, list[str]]:
        if not message_ids:
            return {}
        rows = session.exec(
            select(MessageDeliveryRecord)
            .where(col(MessageDeliveryRecord.message_id).in_(list(message_ids)))
            .order_by(col(MessageDeliveryRecord.delivery_id).asc()),
        ).all()
        result: dict[str, list[str]] = {}
        for row in rows:
            result.setdefault(row.message_id, []).append(row.recipient)
        return result


def mentions(message: MessageView, name: str) -> bool:
    """True when ``@name`` appears in subject or body (case-insensitive, whole handle)."""

    handle = name.strip()
    if not handle:
        return False
    pattern = re.compile(rf"@{re.escape(handle)}(?![A-Za-z0-9_.-])", re.IGNORECASE)
    return bool(pattern.search(message.subject) or pattern.search(message.body))


def is_urgent(message: MessageView) -> bool:
    return message.importance is Importance.URGENT


def filter_inbox(
    entries: Iterable[InboxEntry],
    *,
    scope: RecipientScope,
    me: str,
    urgent_only: bool = False,
) -> list[InboxEntry]:
    """Pure read-side view over inbox entries."""

    me_folded = me.strip().casefold()
    selected: list[InboxEntry] = []
    for entry in entries:
        if urgent_only and not is_urgent(entry.message):
            continue
        if scope is RecipientScope.ME and not (
            entry.recipient.casefold() == me_folded
            or any(name.casefold() == me_folded for name in entry.message.recipients)
        ):
            continue
        if scope is RecipientScope.MENTIONS and not mentions(entry.message, me):
            continue
        selected.append(entry)
    return selected


def filter_reservations(
    reservations: Iterable[ReservationView],
    *,
    scope: RecipientScope,
    me: str,
) -> list[ReservationView]:
    me_folded = me.strip().casefold()
    if scope is RecipientScope.ALL:
        return list(reservations)
    if scope is RecipientScope.ME:
        return [item for item in reservations if item.owner.casefold() == me_folded]
    handle = f"@{me_folded}"
    return [item for item in reservations if handle in item.reason.casefold()]


def _unique_recipients(values: Iterable[str]) -> list[str]:
    recipients: list[str] = []
    for value in values:
        name = value.strip()
        if name and name not in recipients:
            recipients.append(name)
    return recipients


def _encode_page_token(created_at: datetime, message_id: str) -> str:
    return f"{to_utc_aware_datetime(created_at).isoformat()}{_PAGE_TOKEN_SEPARATOR}{message_id}"


def _decode_page_token(token: str) -> tuple[datetime, str]:
    raw_at, separator, message_id = token.partition(_PAGE_TOKEN_SEPARATOR)
    if not separator or not message_id:
        raise ValidationError(f"Invalid page token: {token!r}")
    try:
        created_at = datetime.fromisoformat(raw_at)
    except ValueError as error:
        raise ValidationError(f"Invalid page token: {token!r}") from error
    return to_db_datetime(created_at), message_id


def _to_message_view(row: MessageRecord, recipients: list[str]) -> MessageView:
    return MessageView(
        message_id=row.message_id,
        thread_id=row.thread_id,
        sender=row.sender,
        subject=row.subject,
        body=row.body,
        importance=Importance(row.importance),
        ack_required=bool(row.ack_required),
        created_at=to_utc_aware_datetime(row.created_at),
        recipients=list(recipients),
    )
