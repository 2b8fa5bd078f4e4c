"""Progress reporting for analysis jobs (read side + rolling log writer)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.analysis import AnalysisJob

from .catalog import count_analyzed_items
from .contracts import AnalysisScope

DEFAULT_LOG_LIMIT = 50


@dataclass(frozen=True)
class JobProgress:
    unit_id: int
    survey_id: int | None
    job_id: int | None
    status: str | None
    processed: int
    total: int
    percentage: int
    failed_batches: int = 0
    # Inputs in scope that already hold segments, from any run.
    analyzed: int = 0
    running: bool = False
    logs: list[str] = field(default_factory=list)
    updated_at: datetime | None = None


def compute_percentage(processed: int, total: int) -> int:
    """round(processed / total * 100), clamped to 0..100; 0 when total is 0."""
    if total <= 0:
        return 0
    return max(0, min(100, round(processed / total * 100)))


def append_job_log(job: AnalysisJob, message: str, *, limit: int = DEFAULT_LOG_LIMIT) -> None:
    """Prepend a timestamped line to ``job.logs``, keeping the newest *limit* lines."""
    stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
    logs = [f"[{stamp}] {message}", *(job.logs or [])]
    # Reassign so the JSON column is flagged dirty.
    job.logs = logs[: max(1, limit)]


def scope_job_conditions(scope: AnalysisScope) -> list:
    conditions = [AnalysisJob.unit_id == scope.unit_id]
    if scope.survey_id is None:
        conditions.append(AnalysisJob.survey_id.is_(None))
    else:
        conditions.append(AnalysisJob.survey_id == scope.survey_id)
    return conditions


def latest_job(db: Session, scope: AnalysisScope) -> AnalysisJob | None:
    stmt = select(AnalysisJob).where(*scope_job_conditions(scope)).order_by(AnalysisJob.id.desc()).limit(1)
    return db.execute(stmt).scalars().first()


def snapshot(job: AnalysisJob, *, running: bool = False, analyzed: int = 0) -> JobProgress:
    processed = int(job.processed_items or 0)
    total = int(job.total_items or 0)
    return JobProgress(
        unit_id=job.unit_id,
        survey_id=job.survey_id,
        job_id=job.id,
        status=job.status,
        processed=processed,
        total=total,
        percentage=compute_percentage(processed, total),
        failed_batches=int(job.failed_batches or 0),
        analyzed=analyzed,
        running=running,
        logs=list(job.logs or []),
        updated_at=job.updated_at,
    )


def get_progress(db: Session, scope: AnalysisScope, *, running: bool = False) -> JobProgress | None:
    """Progress of the newest job for *scope*, or ``None`` if it never had one.

    Read-only: never writes to the session.
    """
    job = latest_job(db, scope)
    if job is None:
        return None
    return snapshot(job, running=running, analyzed=count_analyzed_items(db, scope))
