from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from payment_alerts.session_tokens import SessionTokenError, decode_session_token, issue_session_token

SECRET = "unit-test-session-secret"
NOW = datetime(2025, 5, 15, 0, 0, tzinfo=timezone.utc)


def test_issue_and_decode_round_trip() -> None:
    token = issue_session_token(agency_id="agency-a", secret=SECRET, ttl_minutes=60, user_id="user-1", now=NOW)

    session = decode_session_token(token, secret=SECRET, now=NOW + timedelta(minutes=59))

    assert session.agency_id == "agency-a"
    assert session.user_id == "user-1"
    assert session.expires_at == NOW + timedelta(minutes=60)


def test_expired_token_is_rejected() -> None:
    token = issue_session_token(agency_id="agency-a", secret=SECRET, ttl_minutes=5, now=NOW)

    with pytest.raises(SessionTokenError, match="expired"):
        decode_session_token(token, secret=SECRET, now=NOW + timedelta(minutes=5))


def test_tampered_token_is_rejected() -> None:
    token = issue_session_token(agency_id="agency-a", secret=SECRET, ttl_minutes=60, now=NOW)
    forged = issue_session_token(agency_id="agency-b", secret="other-secret", ttl_minutes=60, now=NOW)
    payload, _ = forged.rsplit(".", 1)
    _, signature = token.rsplit(".", 1)

    with pytest.raises(SessionTokenError, match="signature"):
        decode_session_token(f"{payload}.{signature}", secret=SECRET, now=NOW)
    with pytest.raises(SessionTokenError, match="signature"):
        decode_session_token(token, secret="wrong-secret", now=NOW)


@pytest.mark.parametrize("token", ["", "no-dot-here"])
def test_malformed_token_is_rejected(token: str) -> None:
    with pytest.raises(SessionTokenError, match="format"):
        decode_session_token(token, secret=SECRET, now=NOW)


def test_issue_requires_agency_and_secret() -> None:
    with pytest.raises(SessionTokenError):
        issue_session_token(agency_id="  ", secret=SECRET, ttl_minutes=5)
    with pytest.raises(SessionTokenError):
        issue_session_token(agency_id="agency-a", secret="", ttl_minutes=5)
