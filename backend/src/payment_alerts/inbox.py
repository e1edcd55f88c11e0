from __future__ import annotations

import json
import secrets
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, create_engine, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_notification_id() -> str:
    return f"ntf_{secrets.token_hex(8)}"


class NotificationNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class InAppNotificationRecord:
    notification_id: str
    agency_id: str
    user_id: str | None
    type: str
    message: str
    link: str | None
    event_instance_id: str
    is_read: bool
    read_at: datetime | None
    created_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)


class InAppNotificationRepository(Protocol):
    def reset(self) -> None: ...

    def create_once(
        self,
        *,
        agency_id: str,
        event_instance_id: str,
        type: str,
        message: str,
        link: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> tuple[InAppNotificationRecord, bool]: ...

    def list_notifications(
        self,
        agency_id: str,
        *,
        user_id: str | None = None,
        is_read: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[InAppNotificationRecord], int]: ...

    def mark_read(
        self, agency_id: str, notification_id: str, *, user_id: str | None = None
    ) -> InAppNotificationRecord: ...


def _visible_to(record: InAppNotificationRecord, agency_id: str, user_id: str | None) -> bool:
    if record.agency_id != agency_id:
        return False
    return record.user_id is None or record.user_id == user_id


class InMemoryInAppNotificationRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = 0
        self._records: dict[str, InAppNotificationRecord] = {}
        self._order: dict[str, int] = {}
        self._ids_by_event: dict[tuple[str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._sequence = 0
            self._records.clear()
            self._order.clear()
            self._ids_by_event.clear()

    def create_once(
        self,
        *,
        agency_id: str,
        event_instance_id: str,
        type: str,
        message: str,
        link: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> tuple[InAppNotificationRecord, bool]:
        with self._lock:
            existing_id = self._ids_by_event.get((agency_id, event_instance_id))
            if existing_id is not None:
                return self._records[existing_id], False
            record = InAppNotificationRecord(
                notification_id=_new_notification_id(),
                agency_id=agency_id,
                user_id=user_id,
                type=type,
                message=message,
                link=link,
                event_instance_id=event_instance_id,
                is_read=False,
                read_at=None,
                created_at=_now_utc(),
                metadata=dict(metadata or {}),
            )
            self._sequence += 1
            self._records[record.notification_id] = record
            self._order[record.notification_id] = self._sequence
            self._ids_by_event[(agency_id, event_instance_id)] = record.notification_id
        return record, True

    def list_notifications(
        self,
        agency_id: str,
        *,
        user_id: str | None = None,
        is_read: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[InAppNotificationRecord], int]:
        with self._lock:
            matches = [
                record
                for record in self._records.values()
                if _visible_to(record, agency_id, user_id) and (is_read is None or record.is_read == is_read)
            ]
            matches.sort(
                key=lambda value: (value.created_at, self._order[value.notification_id]),
                reverse=True,
            )
        offset = (page - 1) * limit
        return matches[offset : offset + limit], len(matches)

    def mark_read(
        self, agency_id: str, notification_id: str, *, user_id: str | None = None
    ) -> InAppNotificationRecord:
        with self._lock:
            record = self._records.get(notification_id)
            if record is None or not _visible_to(record, agency_id, user_id):
                raise NotificationNotFoundError(notification_id)
            if record.is_read:
                return record
            updated = replace(record, is_read=True, read_at=_now_utc())
            self._records[notification_id] = updated
        return updated


class InboxBase(DeclarativeBase):
    pass


class _NotificationRow(InboxBase):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("agency_id", "event_instance_id", name="uq_notifications_agency_event"),
    )

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(512), nullable=True)
    event_instance_id: Mapped[str] = mapped_column(String(160), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


def _record_from_row(row: _NotificationRow) -> InAppNotificationRecord:
    return InAppNotificationRecord(
        notification_id=row.notification_id,
        agency_id=row.agency_id,
        user_id=row.user_id,
        type=row.type,
        message=row.message,
        link=row.link,
        event_instance_id=row.event_instance_id,
        is_read=row.is_read,
        read_at=None if row.read_at is None else _coerce_utc(row.read_at),
        created_at=_coerce_utc(row.created_at),
        metadata={str(key): str(value) for key, value in json.loads(row.metadata_json or "{}").items()},
    )


class SqlAlchemyInAppNotificationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENGINE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            InboxBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationRow).delete()

    def _find_by_event(self, agency_id: str, event_instance_id: str) -> InAppNotificationRecord | None:
        with self._session() as session:
            row = session.scalars(
                select(_NotificationRow)
                .where(_NotificationRow.agency_id == agency_id)
                .where(_NotificationRow.event_instance_id == event_instance_id)
            ).first()
            return None if row is None else _record_from_row(row)

    def create_once(
        self,
        *,
        agency_id: str,
        event_instance_id: str,
        type: str,
        message: str,
        link: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> tuple[InAppNotificationRecord, bool]:
        existing = self._find_by_event(agency_id, event_instance_id)
        if existing is not None:
            return existing, False
        row = _NotificationRow(
            notification_id=_new_notification_id(),
            agency_id=agency_id,
            user_id=user_id,
            type=type,
            message=message,
            link=link,
            event_instance_id=event_instance_id,
            is_read=False,
            read_at=None,
            created_at=_now_utc(),
            metadata_json=json.dumps(metadata or {}, sort_keys=True, separators=(",", ":")),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    record = _record_from_row(row)
        except IntegrityError:
            # A concurrent pass inserted the same event first.
            winner = self._find_by_event(agency_id, event_instance_id)
            if winner is None:
                raise
            return winner, False
        return record, True

    def list_notifications(
        self,
        agency_id: str,
        *,
        user_id: str | None = None,
        is_read: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[InAppNotificationRecord], int]:
        conditions = [
            _NotificationRow.agency_id == agency_id,
            or_(_NotificationRow.user_id.is_(None), _NotificationRow.user_id == user_id),
        ]
        if is_read is not None:
            conditions.append(_NotificationRow.is_read.is_(is_read))
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(_NotificationRow).where(*conditions)) or 0
            rows = session.scalars(
                select(_NotificationRow)
                .where(*conditions)
                .order_by(_NotificationRow.created_at.desc(), _NotificationRow.notification_id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return [_record_from_row(row) for row in rows], int(total)

    def mark_read(
        self, agency_id: str, notification_id: str, *, user_id: str | None = None
    ) -> InAppNotificationRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationRow, notification_id)
                if row is None or not _visible_to(_record_from_row(row), agency_id, user_id):
                    raise NotificationNotFoundError(notification_id)
                if not row.is_read:
                    row.is_read = True
                    row.read_at = _now_utc()
                return _record_from_row(row)


def create_inbox_repository(*, backend: str, database_url: str) -> InAppNotificationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyInAppNotificationRepository(database_url)
    return InMemoryInAppNotificationRepository()
