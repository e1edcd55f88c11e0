from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

InstallmentStatus = Literal["draft", "pending", "partial", "overdue", "paid", "cancelled"]
RecipientType = Literal["student", "agency_user", "partner_institution", "sales_agent"]
EventType = Literal["due_soon", "overdue", "payment_received"]
DeliveryStatus = Literal["pending", "sent", "failed"]
DispatchOutcomeStatus = Literal["sent", "skipped", "failed"]
JobRunStatus = Literal["running", "success", "failed"]
JobHealthStatus = Literal["healthy", "warning", "critical"]

RECIPIENT_TYPES: tuple[RecipientType, ...] = (
    "student",
    "agency_user",
    "partner_institution",
    "sales_agent",
)
EVENT_TYPES: tuple[EventType, ...] = ("due_soon", "overdue", "payment_received")

DEFAULT_AGENCY_TIMEZONE = "Australia/Brisbane"
DEFAULT_OVERDUE_CUTOFF = time(17, 0)
DEFAULT_DUE_SOON_THRESHOLD_DAYS = 4


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AgencySettings(BaseModel):
    timezone: str = DEFAULT_AGENCY_TIMEZONE
    overdue_cutoff_time: time = DEFAULT_OVERDUE_CUTOFF
    due_soon_threshold_days: int = Field(default=DEFAULT_DUE_SOON_THRESHOLD_DAYS, ge=1, le=30)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("timezone is required")
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"invalid timezone: {normalized}") from exc
        return normalized

    @field_validator("overdue_cutoff_time")
    @classmethod
    def _strip_cutoff_tz(cls, value: time) -> time:
        return value.replace(tzinfo=None, microsecond=0)


class StatusRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class NotificationCounts(BaseModel):
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class RunErrorItem(BaseModel):
    stage: str
    message: str
    agency_id: str | None = None
    installment_id: str | None = None
    recipient_masked: str | None = None


class DeliveryResultItem(BaseModel):
    event_instance_id: str
    event_type: EventType
    recipient_type: RecipientType
    recipient_masked: str
    status: DispatchOutcomeStatus
    reason: str
    attempts: int = 0
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class StatusRunResponse(BaseModel):
    run_id: str | None = None
    run_at: datetime
    dry_run: bool
    status: JobRunStatus
    installments_scanned: int
    transitioned: int
    due_soon_count: int
    in_app_created: int
    notifications: NotificationCounts
    errors: list[RunErrorItem] = Field(default_factory=list)
    results: list[DeliveryResultItem] = Field(default_factory=list)
    duration_ms: int


class PaymentReceivedRequest(BaseModel):
    installment_id: str = Field(min_length=1, max_length=128)
    payment_id: str = Field(min_length=1, max_length=128)
    occurred_at: datetime | None = None

    @field_validator("installment_id", "payment_id")
    @classmethod
    def _strip_ids(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value must not be blank")
        return normalized

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class PaymentReceivedResponse(BaseModel):
    event_instance_id: str
    notifications: NotificationCounts
    errors: list[RunErrorItem] = Field(default_factory=list)
    results: list[DeliveryResultItem] = Field(default_factory=list)


class JobRunItem(BaseModel):
    run_id: str
    job_name: str
    status: JobRunStatus
    dry_run: bool
    started_at: datetime
    finished_at: datetime | None = None
    installments_scanned: int
    transitioned: int
    due_soon_count: int
    in_app_created: int
    notifications: NotificationCounts
    error_count: int
    duration_ms: int | None = None


class JobHealthResponse(BaseModel):
    ok: bool
    job_name: str
    status: JobHealthStatus
    message: str
    last_run_id: str | None = None
    last_run_at: datetime | None = None
    hours_since_last_run: float | None = None


class InAppNotificationItem(BaseModel):
    notification_id: str
    agency_id: str
    user_id: str | None = None
    type: str
    message: str
    link: str | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime
    metadata: dict[str, str] = Field(default_factory=dict)


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class InAppNotificationListResponse(BaseModel):
    data: list[InAppNotificationItem]
    pagination: PaginationMeta


class TemplateValidationRequest(BaseModel):
    event_type: EventType
    subject: str = Field(min_length=1, max_length=256)
    body_html: str = Field(min_length=1, max_length=100_000)


class TemplateValidationResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    placeholders: list[str] = Field(default_factory=list)
    sanitized_body_html: str | None = None
