from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


class SessionTokenError(ValueError):
    """Raised when an agency session token is malformed, forged or expired."""


@dataclass(frozen=True)
class AgencySession:
    agency_id: str
    expires_at: datetime
    user_id: str | None = None


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def issue_session_token(
    *,
    agency_id: str,
    secret: str,
    ttl_minutes: int,
    user_id: str | None = None,
    now: datetime | None = None,
) -> str:
    if not secret:
        raise SessionTokenError("session secret is empty")
    if not agency_id.strip():
        raise SessionTokenError("agency_id is required")
    issued_at = now or datetime.now(timezone.utc)
    claims: dict[str, object] = {
        "agency_id": agency_id.strip(),
        "exp": int((issued_at + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    if user_id:
        claims["user_id"] = user_id
    payload_b64 = _b64url_encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> AgencySession:
    if not token or "." not in token:
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    try:
        expected = _sign(payload_b64, secret)
    except UnicodeEncodeError as exc:
        raise SessionTokenError("invalid token format") from exc
    if not hmac.compare_digest(signature, expected):
        raise SessionTokenError("token signature mismatch")

    try:
        claims = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SessionTokenError("token payload decoding failed") from exc
    if not isinstance(claims, dict):
        raise SessionTokenError("token payload decoding failed")

    agency_id = str(claims.get("agency_id", "")).strip()
    if not agency_id:
        raise SessionTokenError("token agency_id missing")

    try:
        exp = int(claims["exp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise SessionTokenError("token expired")

    user_id = claims.get("user_id")
    return AgencySession(
        agency_id=agency_id,
        expires_at=expires_at,
        user_id=str(user_id) if user_id else None,
    )
