from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from payment_alerts import api as api_module
from payment_alerts.main import create_app
from payment_alerts.notifier import StubNotifierSender
from payment_alerts.session_tokens import issue_session_token

RUN_PATH = "/api/v1/run-status-and-notifications"
AFTER_CUTOFF = "2025-05-15T07:30:00Z"


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.notifier_sender = StubNotifierSender(enabled=True)
    api_module.dispatch_sleep = lambda _seconds: None
    return TestClient(create_app())


def _trigger_headers() -> dict[str, str]:
    return {"X-API-Key": api_module._settings.trigger_api_key}


def _session_headers(agency_id: str = "agency-a", user_id: str | None = None) -> dict[str, str]:
    token = issue_session_token(
        agency_id=agency_id,
        secret=api_module._settings.agency_session_secret,
        ttl_minutes=60,
        user_id=user_id,
    )
    return {"Authorization": f"Bearer {token}"}


def _seed_overdue_scenario(seed_enrollment) -> None:
    store = api_module.engine_store
    seed_enrollment(store)
    store.save_notification_rule(agency_id="agency-a", recipient_type="student", event_type="overdue", is_enabled=True)


@pytest.fixture
def allow_now_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(api_module, "_settings", replace(api_module._settings, engine_allow_now_override=True))


def test_trigger_requires_api_key() -> None:
    client = _client()

    missing = client.post(RUN_PATH, json={"dry_run": True})
    wrong = client.post(RUN_PATH, json={"dry_run": True}, headers={"X-API-Key": "not-the-key"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert api_module.job_runs.get_latest_run() is None


def test_dry_run_reports_candidates_without_side_effects(seed_enrollment) -> None:
    client = _client()
    _seed_overdue_scenario(seed_enrollment)

    response = client.post(
        RUN_PATH,
        json={"dry_run": True, "now_override": AFTER_CUTOFF},
        headers=_trigger_headers(),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["dry_run"] is True
    assert data["status"] == "success"
    assert data["installments_scanned"] == 1
    assert data["transitioned"] == 1
    assert data["notifications"] == {"sent": 0, "skipped": 0, "failed": 0}
    assert data["run_id"] == "jrun_000001"
    assert api_module.engine_store.get_installment("inst-1").status == "pending"


def test_live_now_override_is_rejected_unless_enabled(seed_enrollment) -> None:
    client = _client()
    _seed_overdue_scenario(seed_enrollment)

    response = client.post(RUN_PATH, json={"now_override": AFTER_CUTOFF}, headers=_trigger_headers())

    assert response.status_code == 400
    assert api_module.engine_store.get_installment("inst-1").status == "pending"


def test_trigger_accepts_empty_body() -> None:
    client = _client()

    response = client.post(RUN_PATH, headers=_trigger_headers())

    assert response.status_code == 200
    assert response.json()["installments_scanned"] == 0


def test_malformed_body_is_rejected() -> None:
    client = _client()

    response = client.post(RUN_PATH, json={"dry_run": "sometimes"}, headers=_trigger_headers())

    assert response.status_code == 422


def test_run_then_inbox_lifecycle(seed_enrollment, allow_now_override: None) -> None:
    client = _client()
    _seed_overdue_scenario(seed_enrollment)

    first = client.post(RUN_PATH, json={"now_override": AFTER_CUTOFF}, headers=_trigger_headers())
    second = client.post(RUN_PATH, json={"now_override": AFTER_CUTOFF}, headers=_trigger_headers())

    assert first.status_code == 200
    assert first.json()["transitioned"] == 1
    assert first.json()["in_app_created"] == 1
    assert first.json()["notifications"]["sent"] == 1
    assert first.json()["results"][0]["recipient_masked"] == "s***@example.com"
    assert second.json()["notifications"] == {"sent": 0, "skipped": 1, "failed": 0}

    latest = client.get("/api/v1/runs/latest", headers=_trigger_headers())
    assert latest.status_code == 200
    assert latest.json()["run_id"] == second.json()["run_id"]
    assert latest.json()["notifications"]["skipped"] == 1

    listing = client.get("/api/v1/notifications", headers=_session_headers())
    assert listing.status_code == 200
    body = listing.json()
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "total_pages": 1}
    notification = body["data"][0]
    assert notification["type"] == "overdue_payment"
    assert notification["is_read"] is False
    assert notification["link"] == "/payments/plans?status=overdue"

    marked = client.patch(
        f"/api/v1/notifications/{notification['notification_id']}/mark-read",
        headers=_session_headers(),
    )
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True
    assert marked.json()["read_at"] is not None

    unread = client.get("/api/v1/notifications", params={"is_read": "false"}, headers=_session_headers())
    assert unread.json()["pagination"]["total"] == 0
    assert unread.json()["pagination"]["total_pages"] == 0


def test_inbox_is_scoped_to_the_session_agency(seed_enrollment, allow_now_override: None) -> None:
    client = _client()
    _seed_overdue_scenario(seed_enrollment)
    client.post(RUN_PATH, json={"now_override": AFTER_CUTOFF}, headers=_trigger_headers())
    notification_id = client.get("/api/v1/notifications", headers=_session_headers()).json()["data"][0][
        "notification_id"
    ]

    other = client.get("/api/v1/notifications", headers=_session_headers("agency-b"))
    steal = client.patch(f"/api/v1/notifications/{notification_id}/mark-read", headers=_session_headers("agency-b"))

    assert other.json()["pagination"]["total"] == 0
    assert steal.status_code == 404


def test_inbox_requires_valid_session() -> None:
    client = _client()

    missing = client.get("/api/v1/notifications")
    forged = client.get("/api/v1/notifications", headers={"Authorization": "Bearer abc.def"})

    assert missing.status_code == 401
    assert forged.status_code == 401


def test_inbox_pagination_bounds() -> None:
    client = _client()

    assert client.get("/api/v1/notifications", params={"limit": 0}, headers=_session_headers()).status_code == 422
    assert client.get("/api/v1/notifications", params={"limit": 101}, headers=_session_headers()).status_code == 422
    assert client.get("/api/v1/notifications", params={"page": 0}, headers=_session_headers()).status_code == 422


def test_mark_read_unknown_notification_is_404() -> None:
    client = _client()

    response = client.patch("/api/v1/notifications/ntf_missing/mark-read", headers=_session_headers())

    assert response.status_code == 404


def test_latest_run_is_404_before_any_pass() -> None:
    client = _client()

    response = client.get("/api/v1/runs/latest", headers=_trigger_headers())

    assert response.status_code == 404


def test_payment_received_event(seed_enrollment) -> None:
    client = _client()
    seed_enrollment(api_module.engine_store)
    api_module.engine_store.save_notification_rule(
        agency_id="agency-a", recipient_type="student", event_type="payment_received", is_enabled=True
    )
    payload = {"installment_id": "inst-1", "payment_id": "pay-9"}

    first = client.post("/api/v1/events/payment-received", json=payload, headers=_trigger_headers())
    repeat = client.post("/api/v1/events/payment-received", json=payload, headers=_trigger_headers())
    unknown = client.post(
        "/api/v1/events/payment-received",
        json={"installment_id": "inst-missing", "payment_id": "pay-1"},
        headers=_trigger_headers(),
    )
    unauthenticated = client.post("/api/v1/events/payment-received", json=payload)

    assert first.status_code == 200
    assert first.json()["event_instance_id"] == "payment:pay-9"
    assert first.json()["notifications"]["sent"] == 1
    assert repeat.json()["notifications"]["skipped"] == 1
    assert unknown.status_code == 404
    assert unauthenticated.status_code == 401


def test_template_validation_report() -> None:
    client = _client()

    valid = client.post(
        "/api/v1/templates/validate",
        json={
            "event_type": "overdue",
            "subject": "Overdue: {{amount}}",
            "body_html": "<p onclick='x()'>Hi {{student_name}}</p><script>x()</script>",
        },
        headers=_session_headers(),
    )
    invalid = client.post(
        "/api/v1/templates/validate",
        json={"event_type": "due_soon", "subject": "Hi {{payment_reference}}", "body_html": "<p>{{amount</p>"},
        headers=_session_headers(),
    )

    assert valid.status_code == 200
    assert valid.json() == {
        "valid": True,
        "errors": [],
        "placeholders": ["amount", "student_name"],
        "sanitized_body_html": "<p>Hi {{student_name}}</p>",
    }
    assert invalid.status_code == 200
    assert invalid.json()["valid"] is False
    assert invalid.json()["sanitized_body_html"] is None
    assert len(invalid.json()["errors"]) == 2


def test_template_validation_requires_session_and_known_event() -> None:
    client = _client()
    body = {"event_type": "overdue", "subject": "Hi", "body_html": "<p>Hi</p>"}

    assert client.post("/api/v1/templates/validate", json=body).status_code == 401
    assert (
        client.post(
            "/api/v1/templates/validate",
            json={**body, "event_type": "birthday"},
            headers=_session_headers(),
        ).status_code
        == 422
    )


def test_job_health_is_503_before_any_pass() -> None:
    client = _client()

    unauthenticated = client.get("/api/v1/runs/health")
    response = client.get("/api/v1/runs/health", headers=_trigger_headers())

    assert unauthenticated.status_code == 401
    assert response.status_code == 503
    assert response.json()["status"] == "critical"
    assert response.json()["last_run_at"] is None


def test_job_health_is_healthy_after_a_pass() -> None:
    client = _client()
    client.post(RUN_PATH, json={"dry_run": True}, headers=_trigger_headers())

    response = client.get("/api/v1/runs/health", headers=_trigger_headers())

    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["status"] == "healthy"
    assert response.json()["last_run_id"] == "jrun_000001"


def test_stale_pass_reports_critical_and_alerts(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(
        api_module, "_settings", replace(api_module._settings, job_health_alert_email="oncall@agency.example")
    )
    api_module.job_runs.start_run(
        job_name="status-and-notifications",
        dry_run=False,
        started_at=datetime.now(timezone.utc) - timedelta(hours=30),
    )

    response = client.get("/api/v1/runs/health", headers=_trigger_headers())

    assert response.status_code == 503
    assert response.json()["status"] == "critical"
    assert response.json()["hours_since_last_run"] >= 30
    alerts = api_module.notifier_sender.sent_messages
    assert [alert.to for alert in alerts] == ["oncall@agency.example"]
    assert "missed execution" in alerts[0].subject


def test_mark_read_hides_notifications_addressed_to_another_user() -> None:
    client = _client()
    record, _ = api_module.inbox_repo.create_once(
        agency_id="agency-a",
        event_instance_id="inst-1:overdue:1",
        type="overdue_payment",
        message="Payment overdue",
        user_id="user-1",
    )
    path = f"/api/v1/notifications/{record.notification_id}/mark-read"

    other_user = client.patch(path, headers=_session_headers(user_id="user-2"))
    owner = client.patch(path, headers=_session_headers(user_id="user-1"))

    assert other_user.status_code == 404
    assert owner.status_code == 200
    assert owner.json()["is_read"] is True
