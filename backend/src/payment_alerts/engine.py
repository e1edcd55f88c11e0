from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .dispatcher import PERSISTENCE_ERRORS, DispatchSummary, Dispatcher
from .events import (
    NotificationEvent,
    due_soon_instance_id,
    overdue_instance_id,
    payment_received_instance_id,
)
from .inbox import InAppNotificationRepository
from .models import (
    NotificationCounts,
    PaymentReceivedResponse,
    RunErrorItem,
    StatusRunResponse,
)
from .recipients import RecipientResolver
from .rules import NotificationRuleResolver
from .runs import STATUS_JOB_NAME, JobRunRepository, RunCounts
from .status_rules import is_due_soon, should_transition_to_overdue
from .store import (
    AgencyRecord,
    EngineStore,
    InstallmentContext,
    InstallmentNotFoundError,
    InstallmentRecord,
)
from .templating import TemplateValidationError, format_amount, format_due_date, render_template

logger = logging.getLogger(__name__)

OVERDUE_NOTIFICATION_TYPE = "overdue_payment"
OVERDUE_NOTIFICATION_LINK = "/payments/plans?status=overdue"
SCANNED_STATUSES = ("pending", "overdue")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_template_data(
    context: InstallmentContext,
    event: NotificationEvent,
    *,
    app_base_url: str,
) -> dict[str, str]:
    student = context.student
    installment = context.installment
    agency = context.agency
    return {
        "student_name": student.full_name if student is not None else "",
        "student_email": (student.email or "") if student is not None else "",
        "student_phone": (student.phone or "") if student is not None else "",
        "amount": format_amount(installment.amount),
        "due_date": format_due_date(installment.due_date) if installment.due_date else "",
        "college_name": context.college.name if context.college is not None else "",
        "branch_name": context.branch.name if context.branch is not None else "",
        "agency_name": agency.name,
        "agency_email": agency.contact_email or "",
        "agency_phone": agency.contact_phone or "",
        "payment_instructions": agency.payment_instructions or "",
        "view_link": f"{app_base_url.rstrip('/')}/payments/plans/{context.plan.plan_id}",
        "payment_reference": event.payment_reference or "",
    }


def overdue_message(context: InstallmentContext) -> str:
    student_name = context.student.full_name if context.student is not None else "Unknown student"
    installment = context.installment
    due = format_due_date(installment.due_date) if installment.due_date else "unknown date"
    return f"Payment overdue: {student_name} - {format_amount(installment.amount)} due {due}"


@dataclass
class _InstallmentOutcome:
    agency_id: str
    scanned: int = 0
    transitioned: int = 0
    due_soon: int = 0
    in_app_created: int = 0
    dispatch: DispatchSummary = field(default_factory=DispatchSummary)
    errors: list[RunErrorItem] = field(default_factory=list)

    def error(self, stage: str, message: str, *, installment_id: str | None = None) -> None:
        self.errors.append(
            RunErrorItem(stage=stage, message=message, agency_id=self.agency_id, installment_id=installment_id)
        )


class StatusNotificationEngine:
    def __init__(
        self,
        *,
        store: EngineStore,
        inbox: InAppNotificationRepository,
        runs: JobRunRepository,
        dispatcher: Dispatcher,
        app_base_url: str = "http://localhost:3000",
        max_workers: int = 4,
        recovery_window: timedelta = timedelta(hours=72),
    ) -> None:
        self._store = store
        self._inbox = inbox
        self._runs = runs
        self._dispatcher = dispatcher
        self._rules = NotificationRuleResolver(store)
        self._recipients = RecipientResolver(store)
        self._app_base_url = app_base_url
        self._max_workers = max(1, max_workers)
        self._recovery_window = recovery_window

    def run_once(self, *, now: datetime | None = None, dry_run: bool = False) -> StatusRunResponse:
        """Evaluate every agency's open installments and notify on what changed.

        Never raises for a single installment or recipient; failures are
        itemized in the returned summary.
        """
        started = time.monotonic()
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        errors: list[RunErrorItem] = []
        status = "success"

        run_id: str | None = None
        try:
            run_id = self._runs.start_run(job_name=STATUS_JOB_NAME, dry_run=dry_run, started_at=_now_utc())
        except PERSISTENCE_ERRORS as exc:
            logger.exception("could not record status pass start")
            errors.append(RunErrorItem(stage="run_log", message=str(exc)))
        logger.info("status pass %s started at %s (dry_run=%s)", run_id, run_at.isoformat(), dry_run)

        work: list[tuple[AgencyRecord, InstallmentRecord]] = []
        try:
            agencies = self._store.list_agencies()
        except PERSISTENCE_ERRORS as exc:
            logger.exception("could not list agencies")
            errors.append(RunErrorItem(stage="list_agencies", message=str(exc)))
            agencies = []
            status = "failed"
        for agency in agencies:
            try:
                installments = self._store.list_installments(agency.agency_id, statuses=SCANNED_STATUSES)
            except PERSISTENCE_ERRORS as exc:
                logger.exception("could not list installments for agency %s", agency.agency_id)
                errors.append(RunErrorItem(stage="list_installments", message=str(exc), agency_id=agency.agency_id))
                continue
            work.extend((agency, installment) for installment in installments)

        counts = RunCounts()
        dispatch = DispatchSummary()
        transitioned_by_agency: dict[str, int] = {}
        if work:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="status-pass") as pool:
                futures = {
                    pool.submit(self._process_installment, agency, installment, run_at, dry_run): (agency, installment)
                    for agency, installment in work
                }
                for future in as_completed(futures):
                    agency, installment = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:  # noqa: BLE001
                        logger.exception("installment %s failed during status pass", installment.installment_id)
                        errors.append(
                            RunErrorItem(
                                stage="process_installment",
                                message=str(exc),
                                agency_id=agency.agency_id,
                                installment_id=installment.installment_id,
                            )
                        )
                        counts = _add_counts(counts, scanned=1)
                        continue
                    counts = _add_counts(
                        counts,
                        scanned=outcome.scanned,
                        transitioned=outcome.transitioned,
                        due_soon=outcome.due_soon,
                        in_app_created=outcome.in_app_created,
                    )
                    if outcome.transitioned:
                        transitioned_by_agency[agency.agency_id] = (
                            transitioned_by_agency.get(agency.agency_id, 0) + outcome.transitioned
                        )
                    dispatch.merge(outcome.dispatch)
                    errors.extend(outcome.errors)

        for agency_id, transitioned in sorted(transitioned_by_agency.items()):
            logger.info("agency %s: %d installment(s) moved to overdue", agency_id, transitioned)

        errors.extend(dispatch.errors)
        counts = RunCounts(
            installments_scanned=counts.installments_scanned,
            transitioned=counts.transitioned,
            due_soon_count=counts.due_soon_count,
            in_app_created=counts.in_app_created,
            sent=dispatch.sent,
            skipped=dispatch.skipped,
            failed=dispatch.failed,
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        if run_id is not None:
            try:
                self._runs.finish_run(
                    run_id,
                    status=status,
                    counts=counts,
                    errors=[item.model_dump() for item in errors],
                    finished_at=_now_utc(),
                    duration_ms=duration_ms,
                )
            except PERSISTENCE_ERRORS as exc:
                logger.exception("could not record status pass completion for %s", run_id)
                errors.append(RunErrorItem(stage="run_log", message=str(exc)))

        logger.info(
            "status pass %s finished in %dms: scanned=%d transitioned=%d due_soon=%d sent=%d skipped=%d failed=%d errors=%d",
            run_id,
            duration_ms,
            counts.installments_scanned,
            counts.transitioned,
            counts.due_soon_count,
            counts.sent,
            counts.skipped,
            counts.failed,
            len(errors),
        )
        return StatusRunResponse(
            run_id=run_id,
            run_at=run_at,
            dry_run=dry_run,
            status=status,
            installments_scanned=counts.installments_scanned,
            transitioned=counts.transitioned,
            due_soon_count=counts.due_soon_count,
            in_app_created=counts.in_app_created,
            notifications=NotificationCounts(sent=counts.sent, skipped=counts.skipped, failed=counts.failed),
            errors=errors,
            results=dispatch.results,
            duration_ms=duration_ms,
        )

    def notify_payment_received(
        self,
        installment_id: str,
        payment_id: str,
        *,
        occurred_at: datetime | None = None,
    ) -> PaymentReceivedResponse:
        context = self._store.get_installment_context(installment_id)
        if context is None:
            raise InstallmentNotFoundError(installment_id)
        event = NotificationEvent(
            event_type="payment_received",
            event_instance_id=payment_received_instance_id(payment_id),
            agency_id=context.agency.agency_id,
            installment_id=installment_id,
            occurred_at=_coerce_utc(occurred_at) if occurred_at else _now_utc(),
            payment_reference=payment_id,
        )
        outcome = _InstallmentOutcome(agency_id=context.agency.agency_id)
        self._notify(context, event, outcome)
        return PaymentReceivedResponse(
            event_instance_id=event.event_instance_id,
            notifications=NotificationCounts(
                sent=outcome.dispatch.sent,
                skipped=outcome.dispatch.skipped,
                failed=outcome.dispatch.failed,
            ),
            errors=outcome.errors + outcome.dispatch.errors,
            results=outcome.dispatch.results,
        )

    def _process_installment(
        self,
        agency: AgencyRecord,
        installment: InstallmentRecord,
        now: datetime,
        dry_run: bool,
    ) -> _InstallmentOutcome:
        outcome = _InstallmentOutcome(agency_id=agency.agency_id, scanned=1)
        installment_id = installment.installment_id

        if should_transition_to_overdue(installment, agency.overdue_cutoff_time, agency.timezone, now):
            if dry_run:
                outcome.transitioned = 1
                return outcome
            try:
                overdue = self._store.mark_overdue_if_pending(installment_id, occurred_at=now)
            except PERSISTENCE_ERRORS as exc:
                logger.exception("overdue transition failed for installment %s", installment_id)
                outcome.error("transition", str(exc), installment_id=installment_id)
                return outcome
            if overdue is None:
                logger.info("installment %s was no longer pending, no event emitted", installment_id)
                return outcome
            outcome.transitioned = 1
            self._handle_overdue(NotificationEvent.from_overdue(overdue), outcome)
            return outcome

        if installment.status == "overdue" and installment.overdue_at is not None:
            if dry_run or now - installment.overdue_at > self._recovery_window:
                return outcome
            event = NotificationEvent(
                event_type="overdue",
                event_instance_id=overdue_instance_id(installment_id, installment.overdue_cycle),
                agency_id=agency.agency_id,
                installment_id=installment_id,
                occurred_at=installment.overdue_at,
            )
            self._handle_overdue(event, outcome)
            return outcome

        if is_due_soon(installment, agency.due_soon_threshold_days, agency.timezone, now):
            outcome.due_soon = 1
            if dry_run or installment.due_date is None:
                return outcome
            event = NotificationEvent(
                event_type="due_soon",
                event_instance_id=due_soon_instance_id(installment_id, installment.due_date, installment.overdue_cycle),
                agency_id=agency.agency_id,
                installment_id=installment_id,
                occurred_at=now,
            )
            context = self._load_context(installment_id, outcome)
            if context is not None:
                self._notify(context, event, outcome)
        return outcome

    def _load_context(self, installment_id: str, outcome: _InstallmentOutcome) -> InstallmentContext | None:
        try:
            context = self._store.get_installment_context(installment_id)
        except PERSISTENCE_ERRORS as exc:
            logger.exception("could not load context for installment %s", installment_id)
            outcome.error("load_context", str(exc), installment_id=installment_id)
            return None
        if context is None:
            outcome.error("load_context", "installment, plan or agency record is missing", installment_id=installment_id)
        return context

    def _handle_overdue(self, event: NotificationEvent, outcome: _InstallmentOutcome) -> None:
        context = self._load_context(event.installment_id, outcome)
        if context is None:
            return
        try:
            _, created = self._inbox.create_once(
                agency_id=event.agency_id,
                event_instance_id=event.event_instance_id,
                type=OVERDUE_NOTIFICATION_TYPE,
                message=overdue_message(context),
                link=OVERDUE_NOTIFICATION_LINK,
                metadata={"installment_id": event.installment_id, "event_type": event.event_type},
            )
        except PERSISTENCE_ERRORS as exc:
            logger.exception("in-app notification failed for %s", event.event_instance_id)
            outcome.error("in_app_notification", str(exc), installment_id=event.installment_id)
        else:
            if created:
                outcome.in_app_created += 1
        self._notify(context, event, outcome)

    def _notify(self, context: InstallmentContext, event: NotificationEvent, outcome: _InstallmentOutcome) -> None:
        try:
            rules = self._rules.resolve(event.agency_id, event.event_type)
        except PERSISTENCE_ERRORS as exc:
            logger.exception("rule resolution failed for agency %s", event.agency_id)
            outcome.error("resolve_rules", str(exc), installment_id=event.installment_id)
            return
        if not rules:
            logger.debug("no enabled %s rules for agency %s", event.event_type, event.agency_id)
            return

        data = build_template_data(context, event, app_base_url=self._app_base_url)
        sent_before = outcome.dispatch.sent
        for rule in rules:
            try:
                recipients = self._recipients.expand(context, rule.recipient_type)
            except PERSISTENCE_ERRORS as exc:
                logger.exception("recipient expansion failed for %s", rule.recipient_type)
                outcome.error("expand_recipients", str(exc), installment_id=event.installment_id)
                continue
            if not recipients:
                continue
            try:
                rendered = render_template(rule.template, data)
            except TemplateValidationError as exc:
                logger.error(
                    "could not render %s template for %s: %s",
                    rule.recipient_type,
                    event.event_instance_id,
                    exc,
                )
                outcome.error("render", str(exc), installment_id=event.installment_id)
                continue
            outcome.dispatch.merge(
                self._dispatcher.dispatch(event, recipients, rendered, template_id=rule.template_id)
            )

        if outcome.dispatch.sent > sent_before:
            try:
                self._store.stamp_last_notified(event.installment_id, event.event_type, _now_utc())
            except (InstallmentNotFoundError, *PERSISTENCE_ERRORS) as exc:
                logger.warning("could not stamp last_notified_at for %s: %s", event.installment_id, exc)
                outcome.error("stamp_last_notified", str(exc), installment_id=event.installment_id)


def _add_counts(
    counts: RunCounts,
    *,
    scanned: int = 0,
    transitioned: int = 0,
    due_soon: int = 0,
    in_app_created: int = 0,
) -> RunCounts:
    return RunCounts(
        installments_scanned=counts.installments_scanned + scanned,
        transitioned=counts.transitioned + transitioned,
        due_soon_count=counts.due_soon_count + due_soon,
        in_app_created=counts.in_app_created + in_app_created,
    )
