"""Exclusive, TTL-bounded file path reservations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import PurePosixPath

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskforge.orchestrator.errors import NotFoundError, ReservationConflictError, ValidationError
from taskforge.orchestrator.models import ReservationBatch, ReservationView
from taskforge.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from taskforge.storage.sqlmodel_models import ReservationRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=1)


def normalize_reservation_path(path: str) -> str:
    """Repo-relative POSIX form; reservations lock exact normalized paths."""

    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        raise ValidationError("Reservation path must not be empty.")
    candidate = PurePosixPath(cleaned)
    if candidate.is_absolute() or ".." in candidate.parts:
        raise ValidationError(f"Reservation path must be repo-relative: {path!r}")
    return str(candidate)


class ReservationManager:
    """Grants and releases path locks; expired rows are reclaimed lazily on acquire."""

    def __init__(self, engine: Engine, *, default_ttl: timedelta = DEFAULT_TTL) -> None:
        self.engine = engine
        self.default_ttl = default_ttl

    def acquire(
        self,
        path: str,
        owner: str,
        *,
        reason: str = "",
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> ReservationView:
        """Grant ``path`` to ``owner`` or raise ReservationConflictError.

        The same owner re-acquiring renews the expiry. Linearization comes
        from the write that opens the transaction plus the partial unique
        index on unreleased paths.
        """

        normalized = normalize_reservation_path(path)
        if not owner.strip():
            raise ValidationError("Reservation owner must not be empty.")
        current = now or utc_now()
        expires_at = current + (ttl if ttl is not None else self.default_ttl)
        if expires_at <= current:
            raise ValidationError("Reservation ttl must be positive.")

        with Session(self.engine) as session:
            # Write first so the transaction holds the SQLite write lock before reading.
            session.exec(
                sa_update(ReservationRecord)
                .where(
                    col(ReservationRecord.path) == normalized,
                    col(ReservationRecord.released_at).is_(None),
                    col(ReservationRecord.expires_at) <= to_db_datetime(current),
                )
                .values(released_at=to_db_datetime(current)),
            )
            holder = session.exec(
                select(ReservationRecord).where(
                    ReservationRecord.path == normalized,
                    col(ReservationRecord.released_at).is_(None),
                ),
            ).one_or_none()
            if holder is not None:
                if holder.owner != owner:
                    session.rollback()
                    raise ReservationConflictError(normalized, _to_view(holder))
                holder.expires_at = expires_at
                holder.reason = reason or holder.reason
                session.add(holder)
                session.commit()
                session.refresh(holder)
                logger.info("Renewed reservation %s for %s", normalized, owner)
                return _to_view(holder)

            row = ReservationRecord(
                path=normalized,
                owner=owner,
                reason=reason,
                exclusive=True,
                created_at=current,
                expires_at=expires_at,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ReservationConflictError(normalized, self.holder(normalized)) from error
            session.refresh(row)
            logger.info("Reserved %s for %s until %s", normalized, owner, expires_at.isoformat())
            return _to_view(row)

    def acquire_many(
        self,
        paths: Iterable[str],
        owner: str,
        *,
        reason: str = "",
        ttl: timedelta | None = None,
    ) -> ReservationBatch:
        """Per-path acquire; conflicts are collected instead of raised."""

        batch = ReservationBatch()
        for path in paths:
            try:
                batch.granted.append(self.acquire(path, owner, reason=reason, ttl=ttl))
            except ReservationConflictError as error:
                if error.holder is not None:
                    batch.conflicts.append(error.holder)
        return batch

    def release(self, path: str, owner: str) -> bool:
        """Release ``path`` if ``owner`` holds it; otherwise a no-op returning False."""

        normalized = normalize_reservation_path(path)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ReservationRecord)
                .where(
                    col(ReservationRecord.path) == normalized,
                    col(ReservationRecord.owner) == owner,
                    col(ReservationRecord.released_at).is_(None),
                )
                .values(released_at=to_db_datetime(utc_now())),
            )
            session.commit()
            released = result.rowcount > 0
        if released:
            logger.info("Released %s held by %s", normalized, owner)
        return released

    def release_all(self, owners: Iterable[str]) -> int:
        owner_list = [owner for owner in owners if owner]
        if not owner_list:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ReservationRecord)
                .where(
                    col(ReservationRecord.owner).in_(owner_list),
                    col(ReservationRecord.released_at).is_(None),
                )
                .values(released_at=to_db_datetime(utc_now())),
            )
            session.commit()
            count = result.rowcount
        if count:
            logger.info("Released %d reservations for %s", count, ", ".join(owner_list))
        return count

    def renew(self, owner: str, paths: Iterable[str], *, extend: timedelta) -> list[ReservationView]:
        """Push expiry of the owner's active reservations (all of them if ``paths`` is empty)."""

        normalized = [normalize_reservation_path(path) for path in paths]
        now = utc_now()
        with Session(self.engine) as session:
            query = select(ReservationRecord).where(
                ReservationRecord.owner == owner,
                col(ReservationRecord.released_at).is_(None),
                col(ReservationRecord.expires_at) > to_db_datetime(now),
            )
            if normalized:
                query = query.where(col(ReservationRecord.path).in_(normalized))
            rows = session.exec(query).all()
            for row in rows:
                row.expires_at = max(to_utc_aware_datetime(row.expires_at), now) + extend
                session.add(row)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_view(row) for row in rows]

    def force_release(self, reservation_id: int) -> ReservationView:
        """Operator override: release regardless of owner."""

        with Session(self.engine) as session:
            row = session.get(ReservationRecord, reservation_id)
            if row is None:
                raise NotFoundError(f"Reservation not found: {reservation_id}")
            if row.released_at is None:
                row.released_at = utc_now()
                session.add(row)
                session.commit()
                session.refresh(row)
                logger.warning("Force-released %s held by %s", row.path, row.owner)
            return _to_view(row)

    def holder(self, path: str) -> ReservationView | None:
        normalized = normalize_reservation_path(path)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(ReservationRecord).where(
                    ReservationRecord.path == normalized,
                    col(ReservationRecord.released_at).is_(None),
                    col(ReservationRecord.expires_at) > now,
                ),
            ).one_or_none()
            return _to_view(row) if row is not None else None

    def list_active(
        self,
        limit: int = 50,
        *,
        owner: str | None = None,
        now: datetime | None = None,
    ) -> list[ReservationView]:
        """Unreleased, unexpired reservations, newest first."""

        if limit <= 0:
            raise ValidationError(f"Reservation list limit must be > 0, got {limit}.")
        current = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            query = select(ReservationRecord).where(
                col(ReservationRecord.released_at).is_(None),
                col(ReservationRecord.expires_at) > current,
            )
            if owner is not None:
                query = query.where(ReservationRecord.owner == owner)
            rows = session.exec(
                query.order_by(
                    col(ReservationRecord.created_at).desc(),
                    col(ReservationRecord.reservation_id).desc(),
                ).limit(limit),
            ).all()
            return [_to_view(row) for row in rows]


def _to_view(row: ReservationRecord) -> ReservationView:
    return ReservationView(
        reservation_id=row.reservation_id or 0,
        path=row.path,
        owner=row.owner,
        reason=row.reason,
        exclusive=bool(row.exclusive),
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        released_at=optional_utc(row.released_at),
    )
