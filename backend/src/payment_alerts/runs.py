from __future__ import annotations

import json
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import JobHealthResponse, JobRunStatus

STATUS_JOB_NAME = "status-and-notifications"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RunCounts:
    installments_scanned: int = 0
    transitioned: int = 0
    due_soon_count: int = 0
    in_app_created: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class JobRunRecord:
    run_id: str
    job_name: str
    status: JobRunStatus
    dry_run: bool
    started_at: datetime
    finished_at: datetime | None
    counts: RunCounts
    errors: list[dict[str, str | None]]
    duration_ms: int | None


class JobRunRepository(Protocol):
    def reset(self) -> None: ...

    def start_run(self, *, job_name: str, dry_run: bool, started_at: datetime) -> str: ...

    def finish_run(
        self,
        run_id: str,
        *,
        status: JobRunStatus,
        counts: RunCounts,
        errors: list[dict[str, str | None]],
        finished_at: datetime,
        duration_ms: int,
    ) -> None: ...

    def get_run(self, run_id: str) -> JobRunRecord | None: ...

    def get_latest_run(self, *, job_name: str = STATUS_JOB_NAME) -> JobRunRecord | None: ...


class InMemoryJobRunRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._run_counter = 1
        self._runs: dict[str, JobRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = 1
            self._runs.clear()

    def start_run(self, *, job_name: str, dry_run: bool, started_at: datetime) -> str:
        with self._lock:
            run_id = f"jrun_{self._run_counter:06d}"
            self._run_counter += 1
            self._runs[run_id] = JobRunRecord(
                run_id=run_id,
                job_name=job_name,
                status="running",
                dry_run=dry_run,
                started_at=_coerce_utc(started_at),
                finished_at=None,
                counts=RunCounts(),
                errors=[],
                duration_ms=None,
            )
        return run_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: JobRunStatus,
        counts: RunCounts,
        errors: list[dict[str, str | None]],
        finished_at: datetime,
        duration_ms: int,
    ) -> None:
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                return
            self._runs[run_id] = replace(
                current,
                status=status,
                counts=counts,
                errors=list(errors),
                finished_at=_coerce_utc(finished_at),
                duration_ms=duration_ms,
            )

    def get_run(self, run_id: str) -> JobRunRecord | None:
        return self._runs.get(run_id)

    def get_latest_run(self, *, job_name: str = STATUS_JOB_NAME) -> JobRunRecord | None:
        with self._lock:
            runs = [value for value in self._runs.values() if value.job_name == job_name]
        if not runs:
            return None
        return max(runs, key=lambda value: (value.started_at, value.run_id))


class JobRunsBase(DeclarativeBase):
    pass


class _JobRunRow(JobRunsBase):
    __tablename__ = "status_job_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    installments_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transitioned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_soon_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    in_app_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


def _run_from_row(row: _JobRunRow) -> JobRunRecord:
    return JobRunRecord(
        run_id=row.run_id,
        job_name=row.job_name,
        status=row.status,  # type: ignore[arg-type]
        dry_run=row.dry_run,
        started_at=_coerce_utc(row.started_at),
        finished_at=None if row.finished_at is None else _coerce_utc(row.finished_at),
        counts=RunCounts(
            installments_scanned=row.installments_scanned,
            transitioned=row.transitioned,
            due_soon_count=row.due_soon_count,
            in_app_created=row.in_app_created,
            sent=row.sent_count,
            skipped=row.skipped_count,
            failed=row.failed_count,
        ),
        errors=json.loads(row.errors_json or "[]"),
        duration_ms=row.duration_ms,
    )


class SqlAlchemyJobRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENGINE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            JobRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_JobRunRow).delete()

    def start_run(self, *, job_name: str, dry_run: bool, started_at: datetime) -> str:
        run_id = f"jrun_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                session.add(
                    _JobRunRow(
                        run_id=run_id,
                        job_name=job_name,
                        status="running",
                        dry_run=dry_run,
                        started_at=_coerce_utc(started_at),
                        errors_json="[]",
                    )
                )
        return run_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: JobRunStatus,
        counts: RunCounts,
        errors: list[dict[str, str | None]],
        finished_at: datetime,
        duration_ms: int,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_JobRunRow, run_id)
                if row is None:
                    return
                row.status = status
                row.finished_at = _coerce_utc(finished_at)
                row.installments_scanned = counts.installments_scanned
                row.transitioned = counts.transitioned
                row.due_soon_count = counts.due_soon_count
                row.in_app_created = counts.in_app_created
                row.sent_count = counts.sent
                row.skipped_count = counts.skipped
                row.failed_count = counts.failed
                row.errors_json = json.dumps(errors, sort_keys=True, separators=(",", ":"))
                row.duration_ms = duration_ms

    def get_run(self, run_id: str) -> JobRunRecord | None:
        with self._session() as session:
            row = session.get(_JobRunRow, run_id)
            return None if row is None else _run_from_row(row)

    def get_latest_run(self, *, job_name: str = STATUS_JOB_NAME) -> JobRunRecord | None:
        with self._session() as session:
            row = session.scalars(
                select(_JobRunRow)
                .where(_JobRunRow.job_name == job_name)
                .order_by(_JobRunRow.started_at.desc(), _JobRunRow.run_id.desc())
            ).first()
            return None if row is None else _run_from_row(row)


def evaluate_job_health(
    latest: JobRunRecord | None,
    *,
    now: datetime,
    warning_hours: float = 24.0,
    alert_hours: float = 25.0,
    job_name: str = STATUS_JOB_NAME,
) -> JobHealthResponse:
    """Grade how long ago the scheduled pass last started.

    Within ``warning_hours`` is healthy, up to ``alert_hours`` is a warning,
    anything later (or no run at all) is critical.
    """
    if latest is None:
        return JobHealthResponse(
            ok=False,
            job_name=job_name,
            status="critical",
            message="Job has never run - missed execution detected",
        )

    hours = max(0.0, (_coerce_utc(now) - _coerce_utc(latest.started_at)).total_seconds() / 3600)
    if hours <= warning_hours:
        status, message = "healthy", "Job running normally"
    elif hours <= alert_hours:
        status, message = "warning", "Job slightly delayed but within tolerance"
    else:
        status, message = "critical", f"Job has not run in {round(hours)} hours - missed execution detected"
    return JobHealthResponse(
        ok=status != "critical",
        job_name=job_name,
        status=status,
        message=message,
        last_run_id=latest.run_id,
        last_run_at=_coerce_utc(latest.started_at),
        hours_since_last_run=round(hours, 1),
    )


def create_job_run_repository(*, backend: str, database_url: str) -> JobRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyJobRunRepository(database_url)
    return InMemoryJobRunRepository()
