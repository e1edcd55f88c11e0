from __future__ import annotations

import hmac
import logging
import math
import time
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query, Request, Response

from .config import Settings, get_settings
from .dispatcher import Dispatcher
from .engine import StatusNotificationEngine
from .inbox import InAppNotificationRecord, InAppNotificationRepository, NotificationNotFoundError, create_inbox_repository
from .ledger import DedupLedger, create_dedup_ledger
from .models import (
    InAppNotificationItem,
    InAppNotificationListResponse,
    JobHealthResponse,
    JobRunItem,
    NotificationCounts,
    PaginationMeta,
    PaymentReceivedRequest,
    PaymentReceivedResponse,
    StatusRunRequest,
    StatusRunResponse,
    TemplateValidationRequest,
    TemplateValidationResponse,
)
from .notifier import NotifierSender, ProviderSendRequest, create_notifier_sender, mask_contact_target
from .runs import JobRunRepository, create_job_run_repository, evaluate_job_health
from .session_tokens import AgencySession, SessionTokenError, decode_session_token
from .store import EngineStore, InstallmentNotFoundError, create_engine_store
from .templating import extract_placeholders, sanitize_html, validate_template

logger = logging.getLogger(__name__)

TRIGGER_KEY_HEADER = "X-API-Key"

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["status-notifications"])


def _create_notifier(settings: Settings) -> NotifierSender:
    return create_notifier_sender(
        sender_type=settings.notifier_sender_type,
        enabled=settings.notifier_enabled,
        base_url=settings.notifier_api_base_url,
        api_key=settings.notifier_api_key,
        from_address=settings.notifier_from_address,
        timeout_seconds=settings.notifier_timeout_seconds,
    )


engine_store: EngineStore = create_engine_store(
    backend=_settings.engine_store_backend, database_url=_settings.database_url
)
dedup_ledger: DedupLedger = create_dedup_ledger(
    backend=_settings.engine_store_backend, database_url=_settings.database_url
)
inbox_repo: InAppNotificationRepository = create_inbox_repository(
    backend=_settings.engine_store_backend, database_url=_settings.database_url
)
job_runs: JobRunRepository = create_job_run_repository(
    backend=_settings.engine_store_backend, database_url=_settings.database_url
)
notifier_sender: NotifierSender = _create_notifier(_settings)
dispatch_sleep = time.sleep


def build_engine(settings: Settings) -> StatusNotificationEngine:
    dispatcher = Dispatcher(
        ledger=dedup_ledger,
        sender=notifier_sender,
        max_attempts=settings.dispatch_max_attempts,
        backoff_seconds=settings.dispatch_backoff_seconds,
        from_address=settings.notifier_from_address,
        stale_claim_after=(
            timedelta(minutes=settings.dispatch_stale_claim_minutes) if settings.dispatch_stale_claim_minutes else None
        ),
        sleep=dispatch_sleep,
    )
    return StatusNotificationEngine(
        store=engine_store,
        inbox=inbox_repo,
        runs=job_runs,
        dispatcher=dispatcher,
        app_base_url=settings.app_base_url,
        max_workers=settings.engine_max_workers,
        recovery_window=timedelta(hours=settings.engine_recovery_window_hours),
    )


def reset_runtime_state_for_tests() -> None:
    engine_store.reset()
    dedup_ledger.reset()
    inbox_repo.reset()
    job_runs.reset()


def _require_trigger_key(request: Request) -> None:
    provided = request.headers.get(TRIGGER_KEY_HEADER, "")
    expected = _settings.trigger_api_key
    if not provided or not expected:
        raise HTTPException(401, "trigger key required")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("rejected trigger call from %s: invalid key", request.client.host if request.client else "unknown")
        raise HTTPException(401, "invalid trigger key")


def _require_agency_session(request: Request) -> AgencySession:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "session required")
    try:
        return decode_session_token(token, secret=_settings.agency_session_secret)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _notification_item(record: InAppNotificationRecord) -> InAppNotificationItem:
    return InAppNotificationItem(
        notification_id=record.notification_id,
        agency_id=record.agency_id,
        user_id=record.user_id,
        type=record.type,
        message=record.message,
        link=record.link,
        is_read=record.is_read,
        read_at=record.read_at,
        created_at=record.created_at,
        metadata=record.metadata,
    )


# ---------------------------------------------------------------------------
# Scheduler trigger
# ---------------------------------------------------------------------------


@router.post("/run-status-and-notifications", response_model=StatusRunResponse)
def run_status_and_notifications(request: Request, payload: StatusRunRequest | None = None) -> StatusRunResponse:
    _require_trigger_key(request)
    run_request = payload or StatusRunRequest()
    if (
        run_request.now_override is not None
        and not run_request.dry_run
        and not _settings.engine_allow_now_override
    ):
        raise HTTPException(400, "now_override is only accepted for dry runs")
    return build_engine(_settings).run_once(now=run_request.now_override, dry_run=run_request.dry_run)


@router.post("/events/payment-received", response_model=PaymentReceivedResponse)
def payment_received(request: Request, payload: PaymentReceivedRequest) -> PaymentReceivedResponse:
    _require_trigger_key(request)
    try:
        return build_engine(_settings).notify_payment_received(
            payload.installment_id,
            payload.payment_id,
            occurred_at=payload.occurred_at,
        )
    except InstallmentNotFoundError as exc:
        raise HTTPException(404, f"installment not found: {payload.installment_id}") from exc


@router.get("/runs/latest", response_model=JobRunItem)
def latest_run(request: Request) -> JobRunItem:
    _require_trigger_key(request)
    run = job_runs.get_latest_run()
    if run is None:
        raise HTTPException(404, "no status pass has run yet")
    return JobRunItem(
        run_id=run.run_id,
        job_name=run.job_name,
        status=run.status,
        dry_run=run.dry_run,
        started_at=run.started_at,
        finished_at=run.finished_at,
        installments_scanned=run.counts.installments_scanned,
        transitioned=run.counts.transitioned,
        due_soon_count=run.counts.due_soon_count,
        in_app_created=run.counts.in_app_created,
        notifications=NotificationCounts(
            sent=run.counts.sent,
            skipped=run.counts.skipped,
            failed=run.counts.failed,
        ),
        error_count=len(run.errors),
        duration_ms=run.duration_ms,
    )


def _send_job_health_alert(report: JobHealthResponse, alert_email: str) -> None:
    last_run = report.last_run_at.isoformat() if report.last_run_at else "Never"
    hours = "unknown" if report.hours_since_last_run is None else f"{report.hours_since_last_run}"
    request = ProviderSendRequest(
        to=alert_email,
        subject=f"ALERT: {report.job_name} missed execution",
        body_html=(
            f"<p>The scheduled job {report.job_name} has not run in {hours} hours.</p>"
            f"<p>Last run: {last_run}</p>"
        ),
        idempotency_key=f"job-health:{report.job_name}:{report.last_run_id or 'never'}",
        from_address=_settings.notifier_from_address or None,
    )
    try:
        result = notifier_sender.send_message(request)
    except Exception:  # noqa: BLE001
        logger.exception("job health alert to %s raised", mask_contact_target(alert_email))
        return
    if result.status != "sent":
        logger.warning(
            "job health alert to %s failed: %s",
            mask_contact_target(alert_email),
            result.error_code,
        )


@router.get("/runs/health", response_model=JobHealthResponse)
def job_health(request: Request, response: Response) -> JobHealthResponse:
    _require_trigger_key(request)
    report = evaluate_job_health(
        job_runs.get_latest_run(),
        now=datetime.now(timezone.utc),
        warning_hours=_settings.job_health_warning_hours,
        alert_hours=_settings.job_health_alert_hours,
    )
    if not report.ok:
        logger.warning("status pass health is %s: %s", report.status, report.message)
        if _settings.job_health_alert_email.strip():
            _send_job_health_alert(report, _settings.job_health_alert_email.strip())
        response.status_code = 503
    return report


# ---------------------------------------------------------------------------
# In-app inbox
# ---------------------------------------------------------------------------


@router.get("/notifications", response_model=InAppNotificationListResponse)
def list_notifications(
    request: Request,
    is_read: bool | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> InAppNotificationListResponse:
    session = _require_agency_session(request)
    records, total = inbox_repo.list_notifications(
        session.agency_id,
        user_id=session.user_id,
        is_read=is_read,
        page=page,
        limit=limit,
    )
    return InAppNotificationListResponse(
        data=[_notification_item(record) for record in records],
        pagination=PaginationMeta(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.patch("/notifications/{notification_id}/mark-read", response_model=InAppNotificationItem)
def mark_notification_read(notification_id: str, request: Request) -> InAppNotificationItem:
    session = _require_agency_session(request)
    try:
        record = inbox_repo.mark_read(session.agency_id, notification_id, user_id=session.user_id)
    except NotificationNotFoundError as exc:
        raise HTTPException(404, f"notification not found: {notification_id}") from exc
    return _notification_item(record)


# ---------------------------------------------------------------------------
# Template tooling
# ---------------------------------------------------------------------------


@router.post("/templates/validate", response_model=TemplateValidationResponse)
def validate_template_content(payload: TemplateValidationRequest, request: Request) -> TemplateValidationResponse:
    _require_agency_session(request)
    problems = validate_template(payload.subject, payload.body_html, payload.event_type)
    return TemplateValidationResponse(
        valid=not problems,
        errors=problems,
        placeholders=extract_placeholders(payload.subject, payload.body_html),
        sanitized_body_html=None if problems else sanitize_html(payload.body_html),
    )
