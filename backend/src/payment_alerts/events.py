from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from .models import EventType


def overdue_instance_id(installment_id: str, overdue_cycle: int) -> str:
    return f"{installment_id}:overdue:{overdue_cycle}"


def due_soon_instance_id(installment_id: str, due_date: date, overdue_cycle: int) -> str:
    return f"{installment_id}:due_soon:{due_date.isoformat()}:{overdue_cycle}"


def payment_received_instance_id(payment_id: str) -> str:
    return f"payment:{payment_id}"


@dataclass(frozen=True)
class OverdueEvent:
    """Emitted exactly once per successful pending-to-overdue transition."""

    installment_id: str
    agency_id: str
    occurred_at: datetime
    overdue_cycle: int

    @property
    def event_instance_id(self) -> str:
        return overdue_instance_id(self.installment_id, self.overdue_cycle)


@dataclass(frozen=True)
class NotificationEvent:
    event_type: EventType
    event_instance_id: str
    agency_id: str
    installment_id: str
    occurred_at: datetime
    payment_reference: str | None = None

    @classmethod
    def from_overdue(cls, event: OverdueEvent) -> NotificationEvent:
        return cls(
            event_type="overdue",
            event_instance_id=event.event_instance_id,
            agency_id=event.agency_id,
            installment_id=event.installment_id,
            occurred_at=event.occurred_at,
        )
