from __future__ import annotations

import json
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

ProviderResultStatus = Literal["sent", "failed"]

_RETRYABLE_HTTP_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class ProviderSendRequest:
    to: str
    subject: str
    body_html: str
    idempotency_key: str
    from_address: str | None = None


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False


class NotifierSender(Protocol):
    def send_message(self, payload: ProviderSendRequest) -> ProviderSendResult: ...


class StubNotifierSender:
    """In-process sender for local runs and tests.

    Addresses containing ``fail`` are rejected permanently, ``timeout`` always
    fails transiently and ``flaky`` fails transiently on its first attempt only.
    """

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self._lock = threading.Lock()
        self._attempts_by_key: dict[str, int] = {}
        self.sent_messages: list[ProviderSendRequest] = []

    def send_message(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live delivery is disabled",
            )

        target = payload.to.lower()
        with self._lock:
            attempt = self._attempts_by_key.get(payload.idempotency_key, 0) + 1
            self._attempts_by_key[payload.idempotency_key] = attempt

        if "fail" in target:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )
        if "timeout" in target or ("flaky" in target and attempt == 1):
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="timeout",
                error_message="Stub sender simulated a timeout",
                retryable=True,
            )

        with self._lock:
            self.sent_messages.append(payload)
            sequence = len(self.sent_messages)
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-{sequence:06d}",
        )


class _NotifierSendError(Exception):
    """Internal error raised when a notifier HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class HttpNotifierSender:
    """Email sender that delivers messages through the notifier HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str = "",
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    def send_message(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "from": payload.from_address or self._from_address,
            "to": payload.to,
            "subject": payload.subject,
            "html": payload.body_html,
            "idempotency_key": payload.idempotency_key,
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_contact_target(payload.to)})",
                retryable=exc.retryable,
            )
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id") or response_data.get("id"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, str]:
        """Send a POST request to the notifier messages endpoint."""
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Idempotency-Key": body["idempotency_key"],
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                retryable=exc.code >= 500 or exc.code in _RETRYABLE_HTTP_CODES,
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
                retryable=True,
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
                retryable=True,
            ) from exc
        except ConnectionError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc}",
                retryable=True,
            ) from exc
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)  # type: ignore[no-any-return]
        except json.JSONDecodeError:
            return {}


def create_notifier_sender(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str = "",
    api_key: str = "",
    from_address: str = "",
    timeout_seconds: int = 10,
) -> NotifierSender:
    normalized = sender_type.strip().lower()
    if normalized == "http" and enabled:
        return HttpNotifierSender(
            base_url=base_url,
            api_key=api_key,
            from_address=from_address,
            timeout_seconds=timeout_seconds,
        )
    return StubNotifierSender(enabled=enabled)


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
