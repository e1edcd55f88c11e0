from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class _Evaluable(Protocol):
    status: str
    due_date: date | None


def resolve_timezone(zone_name: str | None) -> tzinfo:
    if not zone_name:
        return timezone.utc
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown agency timezone %r, evaluating in UTC", zone_name)
        return timezone.utc


def agency_local_now(now: datetime, agency_timezone: str | None) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(agency_timezone))


def is_due_soon(
    installment: _Evaluable,
    threshold_days: int,
    agency_timezone: str | None,
    now: datetime,
) -> bool:
    """True when a pending installment falls due within the next ``threshold_days`` local days."""
    if installment.status != "pending" or installment.due_date is None:
        return False
    today = agency_local_now(now, agency_timezone).date()
    return today <= installment.due_date <= today + timedelta(days=threshold_days)


def should_transition_to_overdue(
    installment: _Evaluable,
    cutoff_time: time,
    agency_timezone: str | None,
    now: datetime,
) -> bool:
    """True when a pending installment is past its due date, or due today and past the local cutoff."""
    if installment.status != "pending" or installment.due_date is None:
        return False
    local_now = agency_local_now(now, agency_timezone)
    today = local_now.date()
    if installment.due_date < today:
        return True
    if installment.due_date > today:
        return False
    cutoff = cutoff_time.replace(tzinfo=None)
    return local_now.time().replace(tzinfo=None) > cutoff
