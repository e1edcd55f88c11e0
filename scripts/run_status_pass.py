#!/usr/bin/env python3
"""Trigger one status-and-notifications pass against a running backend."""

from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("PAYMENT_ALERTS_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    api_key: str,
    payload: dict[str, Any] | None = None,
    timeout: int = 300,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json", "X-API-Key": api_key}
    if payload is not None:
        headers["Content-Type"] = "application/json"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the installment status and notification pass once.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Backend base URL, host root (http://localhost:8000) or full prefix (http://localhost:8000/api/v1).",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Trigger key. Defaults to TRIGGER_API_KEY from environment/.env.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Count candidates without writing or sending.")
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 instant to evaluate at. Live runs need ENGINE_ALLOW_NOW_OVERRIDE on the server.",
    )
    parser.add_argument("--show-results", action="store_true", help="Print per-recipient delivery results.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_key = (args.api_key or os.getenv("TRIGGER_API_KEY", "")).strip()
    if not api_key:
        raise SystemExit("TRIGGER_API_KEY is required (set .env or pass --api-key)")

    payload: dict[str, Any] = {"dry_run": args.dry_run}
    if args.now:
        payload["now_override"] = args.now

    report = _request_json(
        "POST",
        _resolve_api_base_url(args.api_base_url),
        "run-status-and-notifications",
        api_key=api_key,
        payload=payload,
    )

    notifications = report.get("notifications", {})
    print(f"run {report['run_id']} status={report['status']} dry_run={report['dry_run']}")
    print(f"  scanned:      {report['installments_scanned']}")
    print(f"  transitioned: {report['transitioned']}")
    print(f"  due soon:     {report['due_soon_count']}")
    print(f"  in-app:       {report['in_app_created']}")
    print(
        "  emails:       "
        f"sent={notifications.get('sent', 0)} "
        f"skipped={notifications.get('skipped', 0)} "
        f"failed={notifications.get('failed', 0)}"
    )
    print(f"  duration:     {report['duration_ms']}ms")

    for error in report.get("errors", []):
        print(f"  ERROR [{error['stage']}] {error.get('installment_id') or '-'}: {error['message']}")
    if args.show_results:
        for result in report.get("results", []):
            print(
                f"  {result['status']:7s} {result['event_type']:16s} {result['recipient_type']:20s} "
                f"{result['recipient_masked']} ({result['reason']})"
            )

    return 1 if report["status"] == "failed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
