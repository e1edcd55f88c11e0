from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(minimum, parsed)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Payment Alerts Engine"
    api_prefix: str = "/api/v1"
    trigger_api_key: str = "dev-trigger-key"
    agency_session_secret: str = "dev-session-secret"
    agency_session_ttl_minutes: int = 480
    engine_store_backend: str = "inmemory"
    database_url: str = ""
    engine_max_workers: int = 4
    engine_allow_now_override: bool = False
    engine_recovery_window_hours: int = 72
    job_health_warning_hours: float = 24.0
    job_health_alert_hours: float = 25.0
    job_health_alert_email: str = ""
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_from_address: str = "notifications@example.com"
    notifier_timeout_seconds: int = 10
    dispatch_max_attempts: int = 4
    dispatch_backoff_seconds: float = 1.0
    dispatch_stale_claim_minutes: int = 30
    app_base_url: str = "http://localhost:3000"
    cors_allowed_origins: tuple[str, ...] = ()
    runtime_secret_guard_mode: str = "warn"

    @property
    def uses_database(self) -> bool:
        return self.engine_store_backend.strip().lower() == "postgres"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("PAYMENT_ALERTS_APP_NAME", "Payment Alerts Engine"),
        api_prefix=os.getenv("PAYMENT_ALERTS_API_PREFIX", "/api/v1"),
        trigger_api_key=os.getenv("TRIGGER_API_KEY", "dev-trigger-key"),
        agency_session_secret=os.getenv("AGENCY_SESSION_SECRET", "dev-session-secret"),
        agency_session_ttl_minutes=_as_int(os.getenv("AGENCY_SESSION_TTL_MINUTES"), 480),
        engine_store_backend=os.getenv("ENGINE_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        engine_max_workers=_as_int(os.getenv("ENGINE_MAX_WORKERS"), 4),
        engine_allow_now_override=_as_bool(os.getenv("ENGINE_ALLOW_NOW_OVERRIDE"), False),
        engine_recovery_window_hours=_as_int(os.getenv("ENGINE_RECOVERY_WINDOW_HOURS"), 72),
        job_health_warning_hours=max(0.0, _as_float(os.getenv("JOB_HEALTH_WARNING_HOURS"), 24.0)),
        job_health_alert_hours=max(0.0, _as_float(os.getenv("JOB_HEALTH_ALERT_HOURS"), 25.0)),
        job_health_alert_email=os.getenv("JOB_HEALTH_ALERT_EMAIL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=os.getenv("NOTIFIER_SENDER_TYPE", "stub"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_from_address=os.getenv("NOTIFIER_FROM_ADDRESS", "notifications@example.com"),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 10),
        dispatch_max_attempts=_as_int(os.getenv("DISPATCH_MAX_ATTEMPTS"), 4),
        dispatch_backoff_seconds=max(0.0, _as_float(os.getenv("DISPATCH_BACKOFF_SECONDS"), 1.0)),
        dispatch_stale_claim_minutes=_as_int(os.getenv("DISPATCH_STALE_CLAIM_MINUTES"), 30, minimum=0),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.trigger_api_key,
        defaults={"dev-trigger-key", "change-me-in-production"},
    ):
        issues.append("TRIGGER_API_KEY is empty or uses a development placeholder")
    if _is_placeholder(
        settings.agency_session_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("AGENCY_SESSION_SECRET is empty or uses a development placeholder")
    if settings.uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when ENGINE_STORE_BACKEND=postgres")
    sender_type = settings.notifier_sender_type.strip().lower()
    if settings.notifier_enabled and sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    return tuple(issues)
