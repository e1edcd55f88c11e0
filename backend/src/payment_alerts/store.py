from __future__ import annotations

import secrets
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Protocol

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .events import OverdueEvent
from .models import AgencySettings, EventType, InstallmentStatus, RecipientType
from .templating import ensure_valid_template

ACTIVE_PLAN_STATUS = "active"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return None if value is None else _coerce_utc(value)


class AgencyNotFoundError(KeyError):
    pass


class InstallmentNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class AgencyRecord:
    agency_id: str
    name: str
    timezone: str
    overdue_cutoff_time: time
    due_soon_threshold_days: int
    contact_email: str | None = None
    contact_phone: str | None = None
    payment_instructions: str | None = None


@dataclass(frozen=True)
class StudentRecord:
    student_id: str
    agency_id: str
    full_name: str
    email: str | None = None
    phone: str | None = None
    assigned_user_id: str | None = None


@dataclass(frozen=True)
class StaffUserRecord:
    user_id: str
    agency_id: str
    full_name: str
    email: str | None = None
    email_notifications_enabled: bool = True
    is_active: bool = True


@dataclass(frozen=True)
class CollegeRecord:
    college_id: str
    agency_id: str
    name: str
    contact_email: str | None = None


@dataclass(frozen=True)
class BranchRecord:
    branch_id: str
    college_id: str
    agency_id: str
    name: str
    contact_email: str | None = None


@dataclass(frozen=True)
class PaymentPlanRecord:
    plan_id: str
    agency_id: str
    student_id: str
    branch_id: str | None = None
    status: str = ACTIVE_PLAN_STATUS


@dataclass(frozen=True)
class InstallmentRecord:
    installment_id: str
    plan_id: str
    agency_id: str
    amount: float
    due_date: date | None
    status: InstallmentStatus = "pending"
    overdue_cycle: int = 0
    overdue_at: datetime | None = None
    last_notified_at: dict[str, datetime] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationRuleRecord:
    rule_id: str
    agency_id: str
    recipient_type: RecipientType
    event_type: EventType
    is_enabled: bool
    template_id: str | None
    updated_at: datetime


@dataclass(frozen=True)
class EmailTemplateRecord:
    template_id: str
    agency_id: str
    recipient_type: RecipientType
    event_type: EventType
    subject: str
    body_html: str
    updated_at: datetime


@dataclass(frozen=True)
class InstallmentContext:
    agency: AgencyRecord
    installment: InstallmentRecord
    plan: PaymentPlanRecord
    student: StudentRecord | None
    branch: BranchRecord | None
    college: CollegeRecord | None
    sales_agent: StaffUserRecord | None


class EngineStore(Protocol):
    def reset(self) -> None: ...

    def save_agency(
        self,
        *,
        agency_id: str,
        name: str,
        settings: AgencySettings | None = None,
        contact_email: str | None = None,
        contact_phone: str | None = None,
        payment_instructions: str | None = None,
    ) -> AgencyRecord: ...

    def update_agency_settings(self, agency_id: str, settings: AgencySettings) -> AgencyRecord: ...

    def get_agency(self, agency_id: str) -> AgencyRecord | None: ...

    def list_agencies(self) -> list[AgencyRecord]: ...

    def save_student(self, record: StudentRecord) -> None: ...

    def save_staff_user(self, record: StaffUserRecord) -> None: ...

    def save_college(self, record: CollegeRecord) -> None: ...

    def save_branch(self, record: BranchRecord) -> None: ...

    def save_payment_plan(self, record: PaymentPlanRecord) -> None: ...

    def save_installment(self, record: InstallmentRecord) -> None: ...

    def get_installment(self, installment_id: str) -> InstallmentRecord | None: ...

    def list_installments(
        self, agency_id: str, *, statuses: Iterable[str] | None = None
    ) -> list[InstallmentRecord]: ...

    def get_installment_context(self, installment_id: str) -> InstallmentContext | None: ...

    def mark_overdue_if_pending(self, installment_id: str, *, occurred_at: datetime) -> OverdueEvent | None: ...

    def set_installment_status(self, installment_id: str, status: InstallmentStatus) -> InstallmentRecord: ...

    def stamp_last_notified(self, installment_id: str, event_type: EventType, notified_at: datetime) -> None: ...

    def list_notifiable_staff(self, agency_id: str) -> list[StaffUserRecord]: ...

    def save_notification_rule(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        is_enabled: bool,
        template_id: str | None = None,
    ) -> NotificationRuleRecord: ...

    def list_notification_rules(
        self, agency_id: str, *, event_type: EventType | None = None
    ) -> list[NotificationRuleRecord]: ...

    def save_template(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        subject: str,
        body_html: str,
        template_id: str | None = None,
    ) -> EmailTemplateRecord: ...

    def get_template(self, agency_id: str, template_id: str) -> EmailTemplateRecord | None: ...


def _agency_record(
    *,
    agency_id: str,
    name: str,
    settings: AgencySettings | None,
    contact_email: str | None,
    contact_phone: str | None,
    payment_instructions: str | None,
) -> AgencyRecord:
    resolved = settings or AgencySettings()
    return AgencyRecord(
        agency_id=agency_id,
        name=name,
        timezone=resolved.timezone,
        overdue_cutoff_time=resolved.overdue_cutoff_time,
        due_soon_threshold_days=resolved.due_soon_threshold_days,
        contact_email=contact_email,
        contact_phone=contact_phone,
        payment_instructions=payment_instructions,
    )


class InMemoryEngineStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agencies: dict[str, AgencyRecord] = {}
        self._students: dict[str, StudentRecord] = {}
        self._staff: dict[str, StaffUserRecord] = {}
        self._colleges: dict[str, CollegeRecord] = {}
        self._branches: dict[str, BranchRecord] = {}
        self._plans: dict[str, PaymentPlanRecord] = {}
        self._installments: dict[str, InstallmentRecord] = {}
        self._rules: dict[tuple[str, str, str], NotificationRuleRecord] = {}
        self._templates: dict[str, EmailTemplateRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._agencies.clear()
            self._students.clear()
            self._staff.clear()
            self._colleges.clear()
            self._branches.clear()
            self._plans.clear()
            self._installments.clear()
            self._rules.clear()
            self._templates.clear()

    def save_agency(
        self,
        *,
        agency_id: str,
        name: str,
        settings: AgencySettings | None = None,
        contact_email: str | None = None,
        contact_phone: str | None = None,
        payment_instructions: str | None = None,
    ) -> AgencyRecord:
        record = _agency_record(
            agency_id=agency_id,
            name=name,
            settings=settings,
            contact_email=contact_email,
            contact_phone=contact_phone,
            payment_instructions=payment_instructions,
        )
        with self._lock:
            self._agencies[agency_id] = record
        return record

    def update_agency_settings(self, agency_id: str, settings: AgencySettings) -> AgencyRecord:
        with self._lock:
            current = self._agencies.get(agency_id)
            if current is None:
                raise AgencyNotFoundError(agency_id)
            updated = replace(
                current,
                timezone=settings.timezone,
                overdue_cutoff_time=settings.overdue_cutoff_time,
                due_soon_threshold_days=settings.due_soon_threshold_days,
            )
            self._agencies[agency_id] = updated
        return updated

    def get_agency(self, agency_id: str) -> AgencyRecord | None:
        return self._agencies.get(agency_id)

    def list_agencies(self) -> list[AgencyRecord]:
        with self._lock:
            return sorted(self._agencies.values(), key=lambda value: value.agency_id)

    def save_student(self, record: StudentRecord) -> None:
        with self._lock:
            self._students[record.student_id] = record

    def save_staff_user(self, record: StaffUserRecord) -> None:
        with self._lock:
            self._staff[record.user_id] = record

    def save_college(self, record: CollegeRecord) -> None:
        with self._lock:
            self._colleges[record.college_id] = record

    def save_branch(self, record: BranchRecord) -> None:
        with self._lock:
            self._branches[record.branch_id] = record

    def save_payment_plan(self, record: PaymentPlanRecord) -> None:
        with self._lock:
            self._plans[record.plan_id] = record

    def save_installment(self, record: InstallmentRecord) -> None:
        with self._lock:
            self._installments[record.installment_id] = replace(
                record, last_notified_at=dict(record.last_notified_at)
            )

    def get_installment(self, installment_id: str) -> InstallmentRecord | None:
        return self._installments.get(installment_id)

    def list_installments(
        self, agency_id: str, *, statuses: Iterable[str] | None = None
    ) -> list[InstallmentRecord]:
        wanted = None if statuses is None else set(statuses)
        with self._lock:
            rows = []
            for record in self._installments.values():
                if record.agency_id != agency_id:
                    continue
                if wanted is not None and record.status not in wanted:
                    continue
                plan = self._plans.get(record.plan_id)
                if plan is None or plan.status != ACTIVE_PLAN_STATUS:
                    continue
                rows.append(record)
        return sorted(rows, key=lambda value: value.installment_id)

    def get_installment_context(self, installment_id: str) -> InstallmentContext | None:
        with self._lock:
            installment = self._installments.get(installment_id)
            if installment is None:
                return None
            plan = self._plans.get(installment.plan_id)
            agency = self._agencies.get(installment.agency_id)
            if plan is None or agency is None:
                return None
            student = self._students.get(plan.student_id)
            branch = self._branches.get(plan.branch_id) if plan.branch_id else None
            college = self._colleges.get(branch.college_id) if branch is not None else None
            sales_agent = None
            if student is not None and student.assigned_user_id:
                candidate = self._staff.get(student.assigned_user_id)
                if candidate is not None and candidate.agency_id == agency.agency_id:
                    sales_agent = candidate
            return InstallmentContext(
                agency=agency,
                installment=installment,
                plan=plan,
                student=student,
                branch=branch,
                college=college,
                sales_agent=sales_agent,
            )

    def mark_overdue_if_pending(self, installment_id: str, *, occurred_at: datetime) -> OverdueEvent | None:
        with self._lock:
            current = self._installments.get(installment_id)
            if current is None or current.status != "pending":
                return None
            updated = replace(
                current,
                status="overdue",
                overdue_cycle=current.overdue_cycle + 1,
                overdue_at=_coerce_utc(occurred_at),
            )
            self._installments[installment_id] = updated
        return OverdueEvent(
            installment_id=installment_id,
            agency_id=updated.agency_id,
            occurred_at=_coerce_utc(occurred_at),
            overdue_cycle=updated.overdue_cycle,
        )

    def set_installment_status(self, installment_id: str, status: InstallmentStatus) -> InstallmentRecord:
        with self._lock:
            current = self._installments.get(installment_id)
            if current is None:
                raise InstallmentNotFoundError(installment_id)
            updated = replace(current, status=status)
            self._installments[installment_id] = updated
        return updated

    def stamp_last_notified(self, installment_id: str, event_type: EventType, notified_at: datetime) -> None:
        with self._lock:
            current = self._installments.get(installment_id)
            if current is None:
                raise InstallmentNotFoundError(installment_id)
            stamps = dict(current.last_notified_at)
            stamps[event_type] = _coerce_utc(notified_at)
            self._installments[installment_id] = replace(current, last_notified_at=stamps)

    def list_notifiable_staff(self, agency_id: str) -> list[StaffUserRecord]:
        with self._lock:
            rows = [
                record
                for record in self._staff.values()
                if record.agency_id == agency_id and record.is_active and record.email_notifications_enabled
            ]
        return sorted(rows, key=lambda value: value.user_id)

    def save_notification_rule(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        is_enabled: bool,
        template_id: str | None = None,
    ) -> NotificationRuleRecord:
        key = (agency_id, recipient_type, event_type)
        with self._lock:
            existing = self._rules.get(key)
            record = NotificationRuleRecord(
                rule_id=existing.rule_id if existing else f"rule_{secrets.token_hex(6)}",
                agency_id=agency_id,
                recipient_type=recipient_type,
                event_type=event_type,
                is_enabled=is_enabled,
                template_id=template_id,
                updated_at=_now_utc(),
            )
            self._rules[key] = record
        return record

    def list_notification_rules(
        self, agency_id: str, *, event_type: EventType | None = None
    ) -> list[NotificationRuleRecord]:
        with self._lock:
            return [
                record
                for (rule_agency, _, rule_event), record in sorted(self._rules.items())
                if rule_agency == agency_id and (event_type is None or rule_event == event_type)
            ]

    def save_template(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        subject: str,
        body_html: str,
        template_id: str | None = None,
    ) -> EmailTemplateRecord:
        content = ensure_valid_template(subject, body_html, event_type)
        record = EmailTemplateRecord(
            template_id=template_id or f"tpl_{secrets.token_hex(6)}",
            agency_id=agency_id,
            recipient_type=recipient_type,
            event_type=event_type,
            subject=content.subject,
            body_html=content.body_html,
            updated_at=_now_utc(),
        )
        with self._lock:
            self._templates[record.template_id] = record
        return record

    def get_template(self, agency_id: str, template_id: str) -> EmailTemplateRecord | None:
        record = self._templates.get(template_id)
        if record is None or record.agency_id != agency_id:
            return None
        return record


class EngineStoreBase(DeclarativeBase):
    pass


class _AgencyRow(EngineStoreBase):
    __tablename__ = "agencies"

    agency_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    overdue_cutoff_time: Mapped[time] = mapped_column(Time, nullable=False)
    due_soon_threshold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    contact_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)


class _StudentRow(EngineStoreBase):
    __tablename__ = "students"

    student_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _StaffUserRow(EngineStoreBase):
    __tablename__ = "staff_users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    email_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _CollegeRow(EngineStoreBase):
    __tablename__ = "colleges"

    college_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _BranchRow(EngineStoreBase):
    __tablename__ = "branches"

    branch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    college_id: Mapped[str] = mapped_column(String(64), ForeignKey("colleges.college_id"), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _PaymentPlanRow(EngineStoreBase):
    __tablename__ = "payment_plans"

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(String(64), ForeignKey("students.student_id"), nullable=False)
    branch_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("branches.branch_id"), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ACTIVE_PLAN_STATUS)


class _InstallmentRow(EngineStoreBase):
    __tablename__ = "installments"

    installment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(64), ForeignKey("payment_plans.plan_id"), nullable=False, index=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    student_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    overdue_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overdue_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_due_soon_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_overdue_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_received_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _NotificationRuleRow(EngineStoreBase):
    __tablename__ = "notification_rules"
    __table_args__ = (
        UniqueConstraint("agency_id", "recipient_type", "event_type", name="uq_notification_rules_agency_recipient_event"),
    )

    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _EmailTemplateRow(EngineStoreBase):
    __tablename__ = "email_templates"

    template_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(String(256), nullable=False)
    body_html: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


_LAST_NOTIFIED_COLUMNS: dict[str, str] = {
    "due_soon": "last_due_soon_notified_at",
    "overdue": "last_overdue_notified_at",
    "payment_received": "last_payment_received_notified_at",
}


def _agency_from_row(row: _AgencyRow) -> AgencyRecord:
    return AgencyRecord(
        agency_id=row.agency_id,
        name=row.name,
        timezone=row.timezone,
        overdue_cutoff_time=row.overdue_cutoff_time,
        due_soon_threshold_days=row.due_soon_threshold_days,
        contact_email=row.contact_email,
        contact_phone=row.contact_phone,
        payment_instructions=row.payment_instructions,
    )


def _installment_from_row(row: _InstallmentRow) -> InstallmentRecord:
    stamps: dict[str, datetime] = {}
    for event_type, column in _LAST_NOTIFIED_COLUMNS.items():
        value = getattr(row, column)
        if value is not None:
            stamps[event_type] = _coerce_utc(value)
    return InstallmentRecord(
        installment_id=row.installment_id,
        plan_id=row.plan_id,
        agency_id=row.agency_id,
        amount=float(row.amount),
        due_date=row.student_due_date,
        status=row.status,  # type: ignore[arg-type]
        overdue_cycle=row.overdue_cycle,
        overdue_at=_optional_utc(row.overdue_at),
        last_notified_at=stamps,
    )


def _student_from_row(row: _StudentRow) -> StudentRecord:
    return StudentRecord(
        student_id=row.student_id,
        agency_id=row.agency_id,
        full_name=row.full_name,
        email=row.email,
        phone=row.phone,
        assigned_user_id=row.assigned_user_id,
    )


def _staff_from_row(row: _StaffUserRow) -> StaffUserRecord:
    return StaffUserRecord(
        user_id=row.user_id,
        agency_id=row.agency_id,
        full_name=row.full_name,
        email=row.email,
        email_notifications_enabled=row.email_notifications_enabled,
        is_active=row.is_active,
    )


def _rule_from_row(row: _NotificationRuleRow) -> NotificationRuleRecord:
    return NotificationRuleRecord(
        rule_id=row.rule_id,
        agency_id=row.agency_id,
        recipient_type=row.recipient_type,  # type: ignore[arg-type]
        event_type=row.event_type,  # type: ignore[arg-type]
        is_enabled=row.is_enabled,
        template_id=row.template_id,
        updated_at=_coerce_utc(row.updated_at),
    )


def _template_from_row(row: _EmailTemplateRow) -> EmailTemplateRecord:
    return EmailTemplateRecord(
        template_id=row.template_id,
        agency_id=row.agency_id,
        recipient_type=row.recipient_type,  # type: ignore[arg-type]
        event_type=row.event_type,  # type: ignore[arg-type]
        subject=row.subject,
        body_html=row.body_html,
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyEngineStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENGINE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            EngineStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                for row_type in (
                    _EmailTemplateRow,
                    _NotificationRuleRow,
                    _InstallmentRow,
                    _PaymentPlanRow,
                    _BranchRow,
                    _CollegeRow,
                    _StaffUserRow,
                    _StudentRow,
                    _AgencyRow,
                ):
                    session.query(row_type).delete()

    def save_agency(
        self,
        *,
        agency_id: str,
        name: str,
        settings: AgencySettings | None = None,
        contact_email: str | None = None,
        contact_phone: str | None = None,
        payment_instructions: str | None = None,
    ) -> AgencyRecord:
        record = _agency_record(
            agency_id=agency_id,
            name=name,
            settings=settings,
            contact_email=contact_email,
            contact_phone=contact_phone,
            payment_instructions=payment_instructions,
        )
        with self._session() as session:
            with session.begin():
                session.merge(
                    _AgencyRow(
                        agency_id=record.agency_id,
                        name=record.name,
                        timezone=record.timezone,
                        overdue_cutoff_time=record.overdue_cutoff_time,
                        due_soon_threshold_days=record.due_soon_threshold_days,
                        contact_email=record.contact_email,
                        contact_phone=record.contact_phone,
                        payment_instructions=record.payment_instructions,
                    )
                )
        return record

    def update_agency_settings(self, agency_id: str, settings: AgencySettings) -> AgencyRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_AgencyRow, agency_id)
                if row is None:
                    raise AgencyNotFoundError(agency_id)
                row.timezone = settings.timezone
                row.overdue_cutoff_time = settings.overdue_cutoff_time
                row.due_soon_threshold_days = settings.due_soon_threshold_days
                return _agency_from_row(row)

    def get_agency(self, agency_id: str) -> AgencyRecord | None:
        with self._session() as session:
            row = session.get(_AgencyRow, agency_id)
            return None if row is None else _agency_from_row(row)

    def list_agencies(self) -> list[AgencyRecord]:
        with self._session() as session:
            rows = session.scalars(select(_AgencyRow).order_by(_AgencyRow.agency_id)).all()
            return [_agency_from_row(row) for row in rows]

    def save_student(self, record: StudentRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _StudentRow(
                        student_id=record.student_id,
                        agency_id=record.agency_id,
                        full_name=record.full_name,
                        email=record.email,
                        phone=record.phone,
                        assigned_user_id=record.assigned_user_id,
                    )
                )

    def save_staff_user(self, record: StaffUserRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _StaffUserRow(
                        user_id=record.user_id,
                        agency_id=record.agency_id,
                        full_name=record.full_name,
                        email=record.email,
                        email_notifications_enabled=record.email_notifications_enabled,
                        is_active=record.is_active,
                    )
                )

    def save_college(self, record: CollegeRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _CollegeRow(
                        college_id=record.college_id,
                        agency_id=record.agency_id,
                        name=record.name,
                        contact_email=record.contact_email,
                    )
                )

    def save_branch(self, record: BranchRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _BranchRow(
                        branch_id=record.branch_id,
                        college_id=record.college_id,
                        agency_id=record.agency_id,
                        name=record.name,
                        contact_email=record.contact_email,
                    )
                )

    def save_payment_plan(self, record: PaymentPlanRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _PaymentPlanRow(
                        plan_id=record.plan_id,
                        agency_id=record.agency_id,
                        student_id=record.student_id,
                        branch_id=record.branch_id,
                        status=record.status,
                    )
                )

    def save_installment(self, record: InstallmentRecord) -> None:
        stamps = {
            column: _optional_utc(record.last_notified_at.get(event_type))
            for event_type, column in _LAST_NOTIFIED_COLUMNS.items()
        }
        with self._session() as session:
            with session.begin():
                session.merge(
                    _InstallmentRow(
                        installment_id=record.installment_id,
                        plan_id=record.plan_id,
                        agency_id=record.agency_id,
                        amount=record.amount,
                        student_due_date=record.due_date,
                        status=record.status,
                        overdue_cycle=record.overdue_cycle,
                        overdue_at=_optional_utc(record.overdue_at),
                        updated_at=_now_utc(),
                        **stamps,
                    )
                )

    def get_installment(self, installment_id: str) -> InstallmentRecord | None:
        with self._session() as session:
            row = session.get(_InstallmentRow, installment_id)
            return None if row is None else _installment_from_row(row)

    def list_installments(
        self, agency_id: str, *, statuses: Iterable[str] | None = None
    ) -> list[InstallmentRecord]:
        query = (
            select(_InstallmentRow)
            .join(_PaymentPlanRow, _PaymentPlanRow.plan_id == _InstallmentRow.plan_id)
            .where(_InstallmentRow.agency_id == agency_id)
            .where(_PaymentPlanRow.status == ACTIVE_PLAN_STATUS)
            .order_by(_InstallmentRow.installment_id)
        )
        if statuses is not None:
            query = query.where(_InstallmentRow.status.in_(list(statuses)))
        with self._session() as session:
            return [_installment_from_row(row) for row in session.scalars(query).all()]

    def get_installment_context(self, installment_id: str) -> InstallmentContext | None:
        with self._session() as session:
            installment = session.get(_InstallmentRow, installment_id)
            if installment is None:
                return None
            plan = session.get(_PaymentPlanRow, installment.plan_id)
            agency = session.get(_AgencyRow, installment.agency_id)
            if plan is None or agency is None:
                return None
            student = session.get(_StudentRow, plan.student_id)
            branch = session.get(_BranchRow, plan.branch_id) if plan.branch_id else None
            college = session.get(_CollegeRow, branch.college_id) if branch is not None else None
            sales_agent = None
            if student is not None and student.assigned_user_id:
                candidate = session.get(_StaffUserRow, student.assigned_user_id)
                if candidate is not None and candidate.agency_id == agency.agency_id:
                    sales_agent = _staff_from_row(candidate)
            return InstallmentContext(
                agency=_agency_from_row(agency),
                installment=_installment_from_row(installment),
                plan=PaymentPlanRecord(
                    plan_id=plan.plan_id,
                    agency_id=plan.agency_id,
                    student_id=plan.student_id,
                    branch_id=plan.branch_id,
                    status=plan.status,
                ),
                student=None if student is None else _student_from_row(student),
                branch=None
                if branch is None
                else BranchRecord(
                    branch_id=branch.branch_id,
                    college_id=branch.college_id,
                    agency_id=branch.agency_id,
                    name=branch.name,
                    contact_email=branch.contact_email,
                ),
                college=None
                if college is None
                else CollegeRecord(
                    college_id=college.college_id,
                    agency_id=college.agency_id,
                    name=college.name,
                    contact_email=college.contact_email,
                ),
                sales_agent=sales_agent,
            )

    def mark_overdue_if_pending(self, installment_id: str, *, occurred_at: datetime) -> OverdueEvent | None:
        occurred_at = _coerce_utc(occurred_at)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_InstallmentRow)
                    .where(_InstallmentRow.installment_id == installment_id)
                    .where(_InstallmentRow.status == "pending")
                    .values(
                        status="overdue",
                        overdue_cycle=_InstallmentRow.overdue_cycle + 1,
                        overdue_at=occurred_at,
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                agency_id, overdue_cycle = session.execute(
                    select(_InstallmentRow.agency_id, _InstallmentRow.overdue_cycle).where(
                        _InstallmentRow.installment_id == installment_id
                    )
                ).one()
        return OverdueEvent(
            installment_id=installment_id,
            agency_id=agency_id,
            occurred_at=occurred_at,
            overdue_cycle=overdue_cycle,
        )

    def set_installment_status(self, installment_id: str, status: InstallmentStatus) -> InstallmentRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_InstallmentRow, installment_id)
                if row is None:
                    raise InstallmentNotFoundError(installment_id)
                row.status = status
                row.updated_at = _now_utc()
                return _installment_from_row(row)

    def stamp_last_notified(self, installment_id: str, event_type: EventType, notified_at: datetime) -> None:
        column = _LAST_NOTIFIED_COLUMNS[event_type]
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_InstallmentRow)
                    .where(_InstallmentRow.installment_id == installment_id)
                    .values({column: _coerce_utc(notified_at)})
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InstallmentNotFoundError(installment_id)

    def list_notifiable_staff(self, agency_id: str) -> list[StaffUserRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_StaffUserRow)
                .where(_StaffUserRow.agency_id == agency_id)
                .where(_StaffUserRow.is_active.is_(True))
                .where(_StaffUserRow.email_notifications_enabled.is_(True))
                .order_by(_StaffUserRow.user_id)
            ).all()
            return [_staff_from_row(row) for row in rows]

    def save_notification_rule(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        is_enabled: bool,
        template_id: str | None = None,
    ) -> NotificationRuleRecord:
        with self._session() as session:
            with session.begin():
                row = session.scalars(
                    select(_NotificationRuleRow)
                    .where(_NotificationRuleRow.agency_id == agency_id)
                    .where(_NotificationRuleRow.recipient_type == recipient_type)
                    .where(_NotificationRuleRow.event_type == event_type)
                ).first()
                if row is None:
                    row = _NotificationRuleRow(
                        rule_id=f"rule_{secrets.token_hex(6)}",
                        agency_id=agency_id,
                        recipient_type=recipient_type,
                        event_type=event_type,
                        is_enabled=is_enabled,
                        template_id=template_id,
                        updated_at=_now_utc(),
                    )
                    session.add(row)
                else:
                    row.is_enabled = is_enabled
                    row.template_id = template_id
                    row.updated_at = _now_utc()
                session.flush()
                return _rule_from_row(row)

    def list_notification_rules(
        self, agency_id: str, *, event_type: EventType | None = None
    ) -> list[NotificationRuleRecord]:
        query = (
            select(_NotificationRuleRow)
            .where(_NotificationRuleRow.agency_id == agency_id)
            .order_by(_NotificationRuleRow.recipient_type, _NotificationRuleRow.event_type)
        )
        if event_type is not None:
            query = query.where(_NotificationRuleRow.event_type == event_type)
        with self._session() as session:
            return [_rule_from_row(row) for row in session.scalars(query).all()]

    def save_template(
        self,
        *,
        agency_id: str,
        recipient_type: RecipientType,
        event_type: EventType,
        subject: str,
        body_html: str,
        template_id: str | None = None,
    ) -> EmailTemplateRecord:
        content = ensure_valid_template(subject, body_html, event_type)
        resolved_id = template_id or f"tpl_{secrets.token_hex(6)}"
        with self._session() as session:
            with session.begin():
                row = session.merge(
                    _EmailTemplateRow(
                        template_id=resolved_id,
                        agency_id=agency_id,
                        recipient_type=recipient_type,
                        event_type=event_type,
                        subject=content.subject,
                        body_html=content.body_html,
                        updated_at=_now_utc(),
                    )
                )
                return _template_from_row(row)

    def get_template(self, agency_id: str, template_id: str) -> EmailTemplateRecord | None:
        with self._session() as session:
            row = session.get(_EmailTemplateRow, template_id)
            if row is None or row.agency_id != agency_id:
                return None
            return _template_from_row(row)


def create_engine_store(*, backend: str, database_url: str) -> EngineStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyEngineStore(database_url)
    return InMemoryEngineStore()
