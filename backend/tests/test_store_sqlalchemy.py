from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest

from payment_alerts.models import AgencySettings
from payment_alerts.store import (
    AgencyNotFoundError,
    InMemoryEngineStore,
    InstallmentNotFoundError,
    SqlAlchemyEngineStore,
)
from payment_alerts.templating import TemplateValidationError

NOW = datetime(2025, 5, 15, 7, 30, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryEngineStore()
    return SqlAlchemyEngineStore(f"sqlite:///{tmp_path / 'engine.db'}")


def test_agency_defaults_and_settings_update(store, seed_enrollment) -> None:
    seed_enrollment(store)

    agency = store.get_agency("agency-a")
    assert agency is not None
    assert agency.timezone == "Australia/Brisbane"
    assert agency.overdue_cutoff_time == time(17, 0)
    assert agency.due_soon_threshold_days == 4

    updated = store.update_agency_settings(
        "agency-a",
        AgencySettings(timezone="Australia/Sydney", overdue_cutoff_time=time(12, 0), due_soon_threshold_days=7),
    )
    assert updated.timezone == "Australia/Sydney"
    assert store.get_agency("agency-a").overdue_cutoff_time == time(12, 0)

    with pytest.raises(AgencyNotFoundError):
        store.update_agency_settings("agency-zz", AgencySettings())


def test_mark_overdue_is_compare_and_set(store, seed_enrollment) -> None:
    seed_enrollment(store)

    first = store.mark_overdue_if_pending("inst-1", occurred_at=NOW)
    second = store.mark_overdue_if_pending("inst-1", occurred_at=NOW + timedelta(minutes=5))

    assert first is not None
    assert first.overdue_cycle == 1
    assert first.event_instance_id == "inst-1:overdue:1"
    assert second is None

    installment = store.get_installment("inst-1")
    assert installment.status == "overdue"
    assert installment.overdue_at == NOW


def test_reopened_installment_gets_a_new_overdue_cycle(store, seed_enrollment) -> None:
    seed_enrollment(store)
    store.mark_overdue_if_pending("inst-1", occurred_at=NOW)

    store.set_installment_status("inst-1", "pending")
    again = store.mark_overdue_if_pending("inst-1", occurred_at=NOW + timedelta(days=1))

    assert again is not None
    assert again.overdue_cycle == 2
    assert again.event_instance_id == "inst-1:overdue:2"


def test_mark_overdue_ignores_non_pending_and_unknown(store, seed_enrollment) -> None:
    seed_enrollment(store, status="paid")

    assert store.mark_overdue_if_pending("inst-1", occurred_at=NOW) is None
    assert store.mark_overdue_if_pending("inst-missing", occurred_at=NOW) is None
    with pytest.raises(InstallmentNotFoundError):
        store.set_installment_status("inst-missing", "pending")


def test_list_installments_filters_status_and_inactive_plans(store, seed_enrollment) -> None:
    seed_enrollment(store, installment_id="inst-1")
    seed_enrollment(store, installment_id="inst-2", status="paid")
    seed_enrollment(store, installment_id="inst-3", plan_status="cancelled")
    seed_enrollment(store, installment_id="inst-4", agency_id="agency-b")

    rows = store.list_installments("agency-a", statuses=("pending", "overdue"))

    assert [row.installment_id for row in rows] == ["inst-1"]
    assert len(store.list_installments("agency-a")) == 2


def test_installment_context_joins_related_records(store, seed_enrollment) -> None:
    seed_enrollment(store, due_date=date(2025, 5, 15))

    context = store.get_installment_context("inst-1")

    assert context is not None
    assert context.agency.name == "Bright Futures"
    assert context.student.full_name == "Sam Lee"
    assert context.branch.name == "City Campus"
    assert context.college.name == "Harbour College"
    assert context.sales_agent.user_id == "agency-a-agent"
    assert context.installment.due_date == date(2025, 5, 15)
    assert context.installment.amount == 1500.0
    assert store.get_installment_context("inst-missing") is None


def test_notifiable_staff_excludes_opted_out_and_inactive(store, seed_enrollment) -> None:
    seed_enrollment(store)

    staff = store.list_notifiable_staff("agency-a")

    assert [user.user_id for user in staff] == ["agency-a-staff"]


def test_stamp_last_notified_per_event_type(store, seed_enrollment) -> None:
    seed_enrollment(store)

    store.stamp_last_notified("inst-1", "due_soon", NOW)

    installment = store.get_installment("inst-1")
    assert installment.last_notified_at == {"due_soon": NOW}
    with pytest.raises(InstallmentNotFoundError):
        store.stamp_last_notified("inst-missing", "overdue", NOW)


def test_notification_rules_upsert_by_recipient_and_event(store, seed_enrollment) -> None:
    seed_enrollment(store)

    created = store.save_notification_rule(
        agency_id="agency-a", recipient_type="student", event_type="overdue", is_enabled=True
    )
    toggled = store.save_notification_rule(
        agency_id="agency-a", recipient_type="student", event_type="overdue", is_enabled=False
    )
    store.save_notification_rule(
        agency_id="agency-a", recipient_type="agency_user", event_type="due_soon", is_enabled=True
    )

    assert toggled.rule_id == created.rule_id
    overdue_rules = store.list_notification_rules("agency-a", event_type="overdue")
    assert len(overdue_rules) == 1
    assert overdue_rules[0].is_enabled is False
    assert len(store.list_notification_rules("agency-a")) == 2


def test_save_template_validates_and_sanitizes(store, seed_enrollment) -> None:
    seed_enrollment(store)

    record = store.save_template(
        agency_id="agency-a",
        recipient_type="student",
        event_type="overdue",
        subject="Overdue: {{amount}}",
        body_html="<p onclick='x()'>Hi {{student_name}}</p><script>x()</script>",
    )

    assert record.template_id.startswith("tpl_")
    assert record.body_html == "<p>Hi {{student_name}}</p>"
    assert store.get_template("agency-a", record.template_id) is not None
    assert store.get_template("agency-b", record.template_id) is None
    with pytest.raises(TemplateValidationError):
        store.save_template(
            agency_id="agency-a",
            recipient_type="student",
            event_type="overdue",
            subject="Overdue",
            body_html="<p>{{payment_reference}}</p>",
        )
