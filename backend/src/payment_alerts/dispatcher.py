from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from .events import NotificationEvent
from .ledger import DedupLedger, LedgerKey
from .models import DeliveryResultItem, RecipientType, RunErrorItem
from .notifier import NotifierSender, ProviderSendRequest, ProviderSendResult, mask_contact_target
from .recipients import Recipient
from .templating import RenderedMessage

logger = logging.getLogger(__name__)

PERSISTENCE_ERRORS = (SQLAlchemyError, OSError)


@dataclass
class DispatchSummary:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[DeliveryResultItem] = field(default_factory=list)
    errors: list[RunErrorItem] = field(default_factory=list)

    def merge(self, other: DispatchSummary) -> None:
        self.sent += other.sent
        self.skipped += other.skipped
        self.failed += other.failed
        self.results.extend(other.results)
        self.errors.extend(other.errors)

    def add(self, item: DeliveryResultItem) -> None:
        if item.status == "sent":
            self.sent += 1
        elif item.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.results.append(item)


def _idempotency_key(key: LedgerKey) -> str:
    raw = f"{key.event_instance_id}|{key.recipient_address}|{key.event_type}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class Dispatcher:
    """Delivers one rendered message to each recipient at most once per event occurrence."""

    def __init__(
        self,
        *,
        ledger: DedupLedger,
        sender: NotifierSender,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        from_address: str | None = None,
        stale_claim_after: timedelta | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._from_address = from_address or None
        self._stale_claim_after = stale_claim_after
        self._sleep = sleep

    def dispatch(
        self,
        event: NotificationEvent,
        recipients: Sequence[Recipient],
        rendered: RenderedMessage,
        *,
        template_id: str | None = None,
    ) -> DispatchSummary:
        summary = DispatchSummary()
        seen: set[LedgerKey] = set()
        for recipient in recipients:
            key = LedgerKey.build(event.event_instance_id, recipient.address, event.event_type)
            masked = mask_contact_target(recipient.address)
            if key in seen:
                summary.add(self._outcome(event, recipient.recipient_type, masked, "skipped", "duplicate_recipient"))
                continue
            seen.add(key)

            try:
                entry = self._ledger.claim(
                    key,
                    agency_id=event.agency_id,
                    recipient_type=recipient.recipient_type,
                    installment_id=event.installment_id,
                    template_id=template_id,
                    email_subject=rendered.subject,
                    stale_after=self._stale_claim_after,
                )
            except PERSISTENCE_ERRORS as exc:
                logger.exception("ledger claim failed for %s -> %s", event.event_instance_id, masked)
                summary.add(
                    self._outcome(
                        event,
                        recipient.recipient_type,
                        masked,
                        "failed",
                        "ledger_unavailable",
                        error_message=str(exc),
                    )
                )
                summary.errors.append(
                    RunErrorItem(
                        stage="ledger_claim",
                        message=str(exc),
                        agency_id=event.agency_id,
                        installment_id=event.installment_id,
                        recipient_masked=masked,
                    )
                )
                continue

            if entry is None:
                summary.add(self._outcome(event, recipient.recipient_type, masked, "skipped", "already_notified"))
                continue

            request = ProviderSendRequest(
                to=recipient.address,
                subject=rendered.subject,
                body_html=rendered.body_html,
                idempotency_key=_idempotency_key(key),
                from_address=self._from_address,
            )
            result, attempts = self._deliver(request, masked)
            status = "sent" if result.status == "sent" else "failed"

            try:
                self._ledger.finalize(
                    entry.entry_id,
                    status=status,
                    attempts=attempts,
                    provider_message_id=result.provider_message_id,
                    error_message=result.error_message,
                )
            except PERSISTENCE_ERRORS as exc:
                logger.exception("ledger finalize failed for entry %s", entry.entry_id)
                summary.errors.append(
                    RunErrorItem(
                        stage="ledger_finalize",
                        message=str(exc),
                        agency_id=event.agency_id,
                        installment_id=event.installment_id,
                        recipient_masked=masked,
                    )
                )

            summary.add(
                self._outcome(
                    event,
                    recipient.recipient_type,
                    masked,
                    status,
                    "delivered" if status == "sent" else "delivery_failed",
                    attempts=attempts,
                    provider_message_id=result.provider_message_id,
                    error_code=result.error_code,
                    error_message=result.error_message,
                )
            )
        return summary

    def _deliver(self, request: ProviderSendRequest, masked: str) -> tuple[ProviderSendResult, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._sender.send_message(request)
            except Exception as exc:  # noqa: BLE001
                logger.exception("sender raised while delivering to %s", masked)
                return (
                    ProviderSendResult(
                        status="failed",
                        attempted_at=datetime.now(timezone.utc),
                        error_code="sender_exception",
                        error_message=str(exc),
                    ),
                    attempt,
                )
            if result.status == "sent":
                return result, attempt
            if not result.retryable or attempt >= self._max_attempts:
                logger.warning(
                    "delivery to %s failed after %d attempt(s): %s",
                    masked,
                    attempt,
                    result.error_code,
                )
                return result, attempt
            delay = self._backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "transient delivery failure to %s (%s), retrying in %.1fs",
                masked,
                result.error_code,
                delay,
            )
            self._sleep(delay)

    @staticmethod
    def _outcome(
        event: NotificationEvent,
        recipient_type: RecipientType,
        masked: str,
        status: str,
        reason: str,
        *,
        attempts: int = 0,
        provider_message_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> DeliveryResultItem:
        return DeliveryResultItem(
            event_instance_id=event.event_instance_id,
            event_type=event.event_type,
            recipient_type=recipient_type,
            recipient_masked=masked,
            status=status,  # type: ignore[arg-type]
            reason=reason,
            attempts=attempts,
            provider_message_id=provider_message_id,
            error_code=error_code,
            error_message=error_message,
        )
