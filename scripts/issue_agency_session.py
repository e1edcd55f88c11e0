#!/usr/bin/env python3
"""Mint an agency session token for calling the inbox and template endpoints locally."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from payment_alerts.config import get_settings
from payment_alerts.session_tokens import issue_session_token


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a signed agency session token.")
    parser.add_argument("--agency-id", required=True)
    parser.add_argument("--user-id", default=None, help="Scope the inbox to one staff user.")
    parser.add_argument("--ttl-minutes", type=int, default=None)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    if not os.getenv("AGENCY_SESSION_SECRET"):
        print("WARN: AGENCY_SESSION_SECRET is not set, using the development secret", file=sys.stderr)
    token = issue_session_token(
        agency_id=args.agency_id,
        secret=settings.agency_session_secret,
        ttl_minutes=args.ttl_minutes or settings.agency_session_ttl_minutes,
        user_id=args.user_id,
    )
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
