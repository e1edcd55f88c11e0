from __future__ import annotations

from collections.abc import Callable
from datetime import date

import pytest

from payment_alerts.models import AgencySettings
from payment_alerts.store import (
    BranchRecord,
    CollegeRecord,
    EngineStore,
    InstallmentRecord,
    PaymentPlanRecord,
    StaffUserRecord,
    StudentRecord,
)

SeedEnrollment = Callable[..., InstallmentRecord]


def _seed_enrollment(
    store: EngineStore,
    *,
    agency_id: str = "agency-a",
    installment_id: str = "inst-1",
    due_date: date | None = date(2025, 5, 15),
    amount: float = 1500.0,
    status: str = "pending",
    student_email: str | None = "sam@example.com",
    staff_email: str | None = "ops@brightfutures.example",
    agent_email: str | None = "agent@brightfutures.example",
    branch_email: str | None = "admissions@harbour.example",
    plan_status: str = "active",
    settings: AgencySettings | None = None,
) -> InstallmentRecord:
    """Agency with one staff user, one sales agent, a college branch and a single-installment plan."""
    suffix = installment_id
    if store.get_agency(agency_id) is None:
        store.save_agency(
            agency_id=agency_id,
            name="Bright Futures",
            settings=settings,
            contact_email="hello@brightfutures.example",
            contact_phone="+61 7 3000 0000",
            payment_instructions="Pay by bank transfer to BSB 000-000.",
        )
        store.save_staff_user(
            StaffUserRecord(user_id=f"{agency_id}-staff", agency_id=agency_id, full_name="Olivia Ops", email=staff_email)
        )
        store.save_staff_user(
            StaffUserRecord(
                user_id=f"{agency_id}-agent",
                agency_id=agency_id,
                full_name="Alex Agent",
                email=agent_email,
                email_notifications_enabled=False,
            )
        )
        store.save_college(
            CollegeRecord(college_id=f"{agency_id}-college", agency_id=agency_id, name="Harbour College")
        )
        store.save_branch(
            BranchRecord(
                branch_id=f"{agency_id}-branch",
                college_id=f"{agency_id}-college",
                agency_id=agency_id,
                name="City Campus",
                contact_email=branch_email,
            )
        )
    store.save_student(
        StudentRecord(
            student_id=f"student-{suffix}",
            agency_id=agency_id,
            full_name="Sam Lee",
            email=student_email,
            phone="+61 400 000 000",
            assigned_user_id=f"{agency_id}-agent",
        )
    )
    store.save_payment_plan(
        PaymentPlanRecord(
            plan_id=f"plan-{suffix}",
            agency_id=agency_id,
            student_id=f"student-{suffix}",
            branch_id=f"{agency_id}-branch",
            status=plan_status,
        )
    )
    installment = InstallmentRecord(
        installment_id=installment_id,
        plan_id=f"plan-{suffix}",
        agency_id=agency_id,
        amount=amount,
        due_date=due_date,
        status=status,  # type: ignore[arg-type]
    )
    store.save_installment(installment)
    return installment


@pytest.fixture
def seed_enrollment() -> SeedEnrollment:
    return _seed_enrollment
