from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import DeliveryStatus, EventType, RecipientType


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_address(address: str) -> str:
    return address.strip().lower()


@dataclass(frozen=True)
class LedgerKey:
    event_instance_id: str
    recipient_address: str
    event_type: EventType

    @classmethod
    def build(cls, event_instance_id: str, recipient_address: str, event_type: EventType) -> LedgerKey:
        return cls(
            event_instance_id=event_instance_id,
            recipient_address=normalize_address(recipient_address),
            event_type=event_type,
        )


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: int
    event_instance_id: str
    recipient_address: str
    event_type: EventType
    recipient_type: RecipientType
    agency_id: str
    installment_id: str | None
    template_id: str | None
    email_subject: str | None
    status: DeliveryStatus
    attempts: int
    provider_message_id: str | None
    error_message: str | None
    created_at: datetime
    finalized_at: datetime | None

    @property
    def key(self) -> LedgerKey:
        return LedgerKey(self.event_instance_id, self.recipient_address, self.event_type)


def _is_stale_claim(entry: LedgerEntry, stale_after: timedelta | None) -> bool:
    if stale_after is None or entry.status != "pending":
        return False
    return entry.created_at < _now_utc() - stale_after


class DedupLedger(Protocol):
    """Durable record of every (event occurrence, recipient) delivery.

    ``claim`` is the only way into the ledger and succeeds at most once per
    key, even when several passes race for it. With ``stale_after`` set, a
    ``pending`` entry claimed longer ago than that is handed to the new caller,
    so a pass that died mid-delivery does not block the recipient forever.
    """

    def reset(self) -> None: ...

    def claim(
        self,
        key: LedgerKey,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        installment_id: str | None,
        template_id: str | None,
        email_subject: str | None,
        stale_after: timedelta | None = None,
    ) -> LedgerEntry | None: ...

    def finalize(
        self,
        entry_id: int,
        *,
        status: DeliveryStatus,
        attempts: int,
        provider_message_id: str | None,
        error_message: str | None,
    ) -> None: ...

    def get(self, key: LedgerKey) -> LedgerEntry | None: ...

    def list_entries(self, *, event_instance_id: str | None = None) -> list[LedgerEntry]: ...


class InMemoryDedupLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 1
        self._entries: dict[int, LedgerEntry] = {}
        self._ids_by_key: dict[LedgerKey, int] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._entries.clear()
            self._ids_by_key.clear()

    def claim(
        self,
        key: LedgerKey,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        installment_id: str | None,
        template_id: str | None,
        email_subject: str | None,
        stale_after: timedelta | None = None,
    ) -> LedgerEntry | None:
        with self._lock:
            existing_id = self._ids_by_key.get(key)
            if existing_id is not None:
                existing = self._entries[existing_id]
                if not _is_stale_claim(existing, stale_after):
                    return None
                reclaimed = replace(existing, created_at=_now_utc())
                self._entries[existing_id] = reclaimed
                return reclaimed
            entry = LedgerEntry(
                entry_id=self._counter,
                event_instance_id=key.event_instance_id,
                recipient_address=key.recipient_address,
                event_type=key.event_type,
                recipient_type=recipient_type,
                agency_id=agency_id,
                installment_id=installment_id,
                template_id=template_id,
                email_subject=email_subject,
                status="pending",
                attempts=0,
                provider_message_id=None,
                error_message=None,
                created_at=_now_utc(),
                finalized_at=None,
            )
            self._counter += 1
            self._entries[entry.entry_id] = entry
            self._ids_by_key[key] = entry.entry_id
        return entry

    def finalize(
        self,
        entry_id: int,
        *,
        status: DeliveryStatus,
        attempts: int,
        provider_message_id: str | None,
        error_message: str | None,
    ) -> None:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != "pending":
                return
            self._entries[entry_id] = replace(
                entry,
                status=status,
                attempts=attempts,
                provider_message_id=provider_message_id,
                error_message=error_message,
                finalized_at=_now_utc(),
            )

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        with self._lock:
            entry_id = self._ids_by_key.get(key)
            return None if entry_id is None else self._entries[entry_id]

    def list_entries(self, *, event_instance_id: str | None = None) -> list[LedgerEntry]:
        with self._lock:
            return [
                entry
                for entry in sorted(self._entries.values(), key=lambda value: value.entry_id)
                if event_instance_id is None or entry.event_instance_id == event_instance_id
            ]


class LedgerBase(DeclarativeBase):
    pass


class _NotificationLogRow(LedgerBase):
    __tablename__ = "notification_log"
    __table_args__ = (
        UniqueConstraint(
            "event_instance_id",
            "recipient_address",
            "event_type",
            name="uq_notification_log_event_recipient",
        ),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_instance_id: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    recipient_address: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    installment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email_subject: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _entry_from_row(row: _NotificationLogRow) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row.entry_id,
        event_instance_id=row.event_instance_id,
        recipient_address=row.recipient_address,
        event_type=row.event_type,  # type: ignore[arg-type]
        recipient_type=row.recipient_type,  # type: ignore[arg-type]
        agency_id=row.agency_id,
        installment_id=row.installment_id,
        template_id=row.template_id,
        email_subject=row.email_subject,
        status=row.status,  # type: ignore[arg-type]
        attempts=row.attempts,
        provider_message_id=row.provider_message_id,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        finalized_at=None if row.finalized_at is None else _coerce_utc(row.finalized_at),
    )


class SqlAlchemyDedupLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENGINE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationLogRow).delete()

    def claim(
        self,
        key: LedgerKey,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        installment_id: str | None,
        template_id: str | None,
        email_subject: str | None,
        stale_after: timedelta | None = None,
    ) -> LedgerEntry | None:
        row = _NotificationLogRow(
            event_instance_id=key.event_instance_id,
            recipient_address=key.recipient_address,
            event_type=key.event_type,
            recipient_type=recipient_type,
            agency_id=agency_id,
            installment_id=installment_id,
            template_id=template_id,
            email_subject=email_subject,
            status="pending",
            attempts=0,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    return _entry_from_row(row)
        except IntegrityError:
            if stale_after is None:
                return None
        return self._reclaim_stale(key, stale_after)

    def _reclaim_stale(self, key: LedgerKey, stale_after: timedelta) -> LedgerEntry | None:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_NotificationLogRow)
                    .where(_NotificationLogRow.event_instance_id == key.event_instance_id)
                    .where(_NotificationLogRow.recipient_address == key.recipient_address)
                    .where(_NotificationLogRow.event_type == key.event_type)
                    .where(_NotificationLogRow.status == "pending")
                    .where(_NotificationLogRow.created_at < now - stale_after)
                    .values(created_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
        return self.get(key)

    def finalize(
        self,
        entry_id: int,
        *,
        status: DeliveryStatus,
        attempts: int,
        provider_message_id: str | None,
        error_message: str | None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_NotificationLogRow)
                    .where(_NotificationLogRow.entry_id == entry_id)
                    .where(_NotificationLogRow.status == "pending")
                    .values(
                        status=status,
                        attempts=attempts,
                        provider_message_id=provider_message_id,
                        error_message=error_message,
                        finalized_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        with self._session() as session:
            row = session.scalars(
                select(_NotificationLogRow)
                .where(_NotificationLogRow.event_instance_id == key.event_instance_id)
                .where(_NotificationLogRow.recipient_address == key.recipient_address)
                .where(_NotificationLogRow.event_type == key.event_type)
            ).first()
            return None if row is None else _entry_from_row(row)

    def list_entries(self, *, event_instance_id: str | None = None) -> list[LedgerEntry]:
        query = select(_NotificationLogRow).order_by(_NotificationLogRow.entry_id)
        if event_instance_id is not None:
            query = query.where(_NotificationLogRow.event_instance_id == event_instance_id)
        with self._session() as session:
            return [_entry_from_row(row) for row in session.scalars(query).all()]


def create_dedup_ledger(*, backend: str, database_url: str) -> DedupLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDedupLedger(database_url)
    return InMemoryDedupLedger()
