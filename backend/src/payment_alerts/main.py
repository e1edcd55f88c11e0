from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def _origin_of(url: str) -> str:
    trimmed = url.strip().rstrip("/")
    if "://" not in trimmed:
        return trimmed
    parts = trimmed.split("/")
    return "/".join(parts[:3])


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set TRIGGER_API_KEY and AGENCY_SESSION_SECRET to real values "
                + "and configure the notifier or disable it with NOTIFIER_ENABLED=false."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")

    origins = list(settings.cors_allowed_origins) or [_origin_of(settings.app_base_url)]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
