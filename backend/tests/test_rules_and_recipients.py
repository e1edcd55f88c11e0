from __future__ import annotations

from payment_alerts.default_templates import default_template
from payment_alerts.recipients import RecipientResolver, usable_address
from payment_alerts.rules import NotificationRuleResolver
from payment_alerts.store import CollegeRecord, InMemoryEngineStore, StaffUserRecord


def test_resolver_returns_enabled_rules_in_recipient_order(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    for recipient_type in ("sales_agent", "student", "partner_institution"):
        store.save_notification_rule(
            agency_id="agency-a", recipient_type=recipient_type, event_type="overdue", is_enabled=True
        )
    store.save_notification_rule(agency_id="agency-a", recipient_type="agency_user", event_type="overdue", is_enabled=False)
    store.save_notification_rule(agency_id="agency-a", recipient_type="agency_user", event_type="due_soon", is_enabled=True)

    rules = NotificationRuleResolver(store).resolve("agency-a", "overdue")

    assert [rule.recipient_type for rule in rules] == ["student", "partner_institution", "sales_agent"]
    assert all(rule.uses_default_template for rule in rules)
    assert rules[0].template == default_template("student", "overdue")


def test_resolver_prefers_custom_template(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    template = store.save_template(
        agency_id="agency-a",
        recipient_type="student",
        event_type="overdue",
        subject="Late: {{amount}}",
        body_html="<p>{{student_name}}, please pay.</p>",
    )
    store.save_notification_rule(
        agency_id="agency-a",
        recipient_type="student",
        event_type="overdue",
        is_enabled=True,
        template_id=template.template_id,
    )

    rules = NotificationRuleResolver(store).resolve("agency-a", "overdue")

    assert rules[0].template_id == template.template_id
    assert rules[0].template.subject == "Late: {{amount}}"


def test_resolver_falls_back_when_custom_template_is_missing(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    store.save_notification_rule(
        agency_id="agency-a", recipient_type="student", event_type="overdue", is_enabled=True, template_id="tpl_gone"
    )

    rules = NotificationRuleResolver(store).resolve("agency-a", "overdue")

    assert rules[0].uses_default_template
    assert rules[0].template == default_template("student", "overdue")


def test_resolver_returns_nothing_without_rules(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    assert NotificationRuleResolver(store).resolve("agency-a", "due_soon") == []


def test_expand_each_recipient_type(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    context = store.get_installment_context("inst-1")
    resolver = RecipientResolver(store)

    assert [r.address for r in resolver.expand(context, "student")] == ["sam@example.com"]
    assert [r.address for r in resolver.expand(context, "agency_user")] == ["ops@brightfutures.example"]
    assert [r.address for r in resolver.expand(context, "partner_institution")] == ["admissions@harbour.example"]
    agents = resolver.expand(context, "sales_agent")
    assert [(r.address, r.user_id) for r in agents] == [("agent@brightfutures.example", "agency-a-agent")]


def test_partner_falls_back_to_college_contact(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store, branch_email=None)
    store.save_college(
        CollegeRecord(
            college_id="agency-a-college",
            agency_id="agency-a",
            name="Harbour College",
            contact_email="finance@harbour.example",
        )
    )

    recipients = RecipientResolver(store).expand(store.get_installment_context("inst-1"), "partner_institution")

    assert [r.address for r in recipients] == ["finance@harbour.example"]
    assert recipients[0].display_name == "City Campus"


def test_missing_or_invalid_addresses_are_skipped(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store, student_email="not-an-email", agent_email=None, branch_email="")
    context = store.get_installment_context("inst-1")
    resolver = RecipientResolver(store)

    assert resolver.expand(context, "student") == []
    assert resolver.expand(context, "sales_agent") == []
    assert resolver.expand(context, "partner_institution") == []


def test_agency_users_are_deduplicated_by_address(seed_enrollment) -> None:
    store = InMemoryEngineStore()
    seed_enrollment(store)
    store.save_staff_user(
        StaffUserRecord(user_id="agency-a-zed", agency_id="agency-a", full_name="Zed", email="OPS@brightfutures.example")
    )
    store.save_staff_user(
        StaffUserRecord(
            user_id="agency-a-gone", agency_id="agency-a", full_name="Gone", email="gone@brightfutures.example", is_active=False
        )
    )

    recipients = RecipientResolver(store).expand(store.get_installment_context("inst-1"), "agency_user")

    assert [r.user_id for r in recipients] == ["agency-a-staff"]


def test_usable_address() -> None:
    assert usable_address("  sam@example.com ") == "sam@example.com"
    assert usable_address("sam@localhost") is None
    assert usable_address(None) is None
