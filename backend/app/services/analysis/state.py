"""Analysis job state machine.

PENDING -> PROCESSING -> COMPLETED | STOPPED | FAILED

Transitions that can race (start, completion, failure, stop) are single
compare-and-set UPDATEs, so a stop issued from any process wins over a
natural completion that lands later.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.models.analysis import AnalysisJob, FeedbackSegment, RawFeedbackInput
from app.schemas.analysis import ACTIVE_JOB_STATUSES, JobStatus
from app.services.ai.common.audit import create_audit_log

from .contracts import AnalysisScope
from .progress import DEFAULT_LOG_LIMIT, append_job_log, scope_job_conditions

logger = logging.getLogger(__name__)


def _now_utc(db: Session) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values.
    if db.get_bind().dialect.name == "sqlite":
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def _audit(db: Session, job: AnalysisJob, action: str, **meta) -> None:
    create_audit_log(
        db,
        entity_type="analysis_job",
        entity_id=str(job.id),
        action=action,
        new_value={"status": job.status},
        metadata={"unit_id": job.unit_id, "survey_id": job.survey_id, **meta},
    )


def find_active_job(db: Session, scope: AnalysisScope) -> AnalysisJob | None:
    stmt = (
        select(AnalysisJob)
        .where(*scope_job_conditions(scope), AnalysisJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(AnalysisJob.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def create_job(db: Session, scope: AnalysisScope) -> tuple[AnalysisJob, bool]:
    """Return the scope's newest PENDING/PROCESSING job, or insert a PENDING one.

    Returns ``(job, created)``. Does not commit.
    """
    existing = find_active_job(db, scope)
    if existing is not None:
        return existing, False

    job = AnalysisJob(
        unit_id=scope.unit_id,
        survey_id=scope.survey_id,
        status=JobStatus.PENDING.value,
        total_items=0,
        processed_items=0,
        failed_batches=0,
        logs=[],
    )
    db.add(job)
    db.flush()
    append_job_log(job, f"Job created for {scope}")
    return job, True


def claim_job(db: Session, job_id: int) -> bool:
    """PENDING -> PROCESSING. False when the job is not PENDING (someone else started it)."""
    result = db.execute(
        update(AnalysisJob)
        .where(AnalysisJob.id == job_id, AnalysisJob.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.PROCESSING.value,
            started_at=_now_utc(db),
            last_scanned_id=None,
        )
    )
    return result.rowcount == 1


def complete_job(db: Session, job: AnalysisJob, *, log_limit: int = DEFAULT_LOG_LIMIT) -> bool:
    """PROCESSING -> COMPLETED. A job already STOPPED stays STOPPED."""
    result = db.execute(
        update(AnalysisJob)
        .where(AnalysisJob.id == job.id, AnalysisJob.status == JobStatus.PROCESSING.value)
        .values(status=JobStatus.COMPLETED.value, finished_at=_now_utc(db))
    )
    db.refresh(job)
    if result.rowcount != 1:
        logger.info("Job %s not completed: status is %s", job.id, job.status)
        return False
    append_job_log(job, f"All batches complete. Processed {job.processed_items} comments.", limit=log_limit)
    _audit(db, job, "ANALYSIS_JOB_COMPLETED", processed=job.processed_items)
    return True


def stop_job(db: Session, job: AnalysisJob, *, reason: str, log_limit: int = DEFAULT_LOG_LIMIT) -> bool:
    """PENDING/PROCESSING -> STOPPED. Committed batches stay committed."""
    result = db.execute(
        update(AnalysisJob)
        .where(AnalysisJob.id == job.id, AnalysisJob.status.in_(ACTIVE_JOB_STATUSES))
        .values(status=JobStatus.STOPPED.value, finished_at=_now_utc(db))
    )
    db.refresh(job)
    if result.rowcount != 1:
        return False
    append_job_log(job, f"Stopped: {reason}", limit=log_limit)
    _audit(db, job, "ANALYSIS_JOB_STOPPED", reason=reason)
    return True


def fail_job(db: Session, job: AnalysisJob, message: str, *, log_limit: int = DEFAULT_LOG_LIMIT) -> bool:
    """PROCESSING -> FAILED. A job already STOPPED stays STOPPED."""
    result = db.execute(
        update(AnalysisJob)
        .where(AnalysisJob.id == job.id, AnalysisJob.status == JobStatus.PROCESSING.value)
        .values(status=JobStatus.FAILED.value, error=message, finished_at=_now_utc(db))
    )
    db.refresh(job)
    if result.rowcount != 1:
        logger.info("Job %s not failed (%s): status is %s", job.id, message, job.status)
        return False
    append_job_log(job, f"Failed: {message}", limit=log_limit)
    _audit(db, job, "ANALYSIS_JOB_FAILED", error=message)
    logger.warning("Analysis job %s failed: %s", job.id, message)
    return True


def stop_requested(db: Session, job: AnalysisJob) -> bool:
    """Re-read the persisted status; a STOPPED row means someone asked us to stop."""
    db.refresh(job, attribute_names=["status"])
    return job.status == JobStatus.STOPPED.value


def request_stop(db: Session, scope: AnalysisScope, *, reason: str = "stop requested") -> list[int]:
    """Stop every PENDING/PROCESSING job of *scope*. Returns the stopped job ids."""
    stopped: list[int] = []
    jobs = db.execute(
        select(AnalysisJob).where(*scope_job_conditions(scope), AnalysisJob.status.in_(ACTIVE_JOB_STATUSES))
    ).scalars().all()
    for job in jobs:
        if stop_job(db, job, reason=reason):
            stopped.append(job.id)
    return stopped


def record_batch_success(
    job: AnalysisJob,
    *,
    items: int,
    cursor: int,
    message: str,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> None:
    job.processed_items = int(job.processed_items or 0) + items
    job.last_scanned_id = cursor
    append_job_log(job, message, limit=log_limit)


def record_batch_failure(
    db: Session,
    job: AnalysisJob,
    *,
    cursor: int,
    message: str,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> None:
    job.failed_batches = int(job.failed_batches or 0) + 1
    job.last_scanned_id = cursor
    append_job_log(job, message, limit=log_limit)
    _audit(db, job, "ANALYSIS_BATCH_FAILED", error=message, cursor=cursor)


def _segment_ids_page(db: Session, scope: AnalysisScope, page_size: int) -> list[int]:
    stmt = (
        select(FeedbackSegment.id)
        .join(RawFeedbackInput, RawFeedbackInput.id == FeedbackSegment.raw_input_id)
        .where(RawFeedbackInput.target_unit_id == scope.unit_id)
        .order_by(FeedbackSegment.id.asc())
        .limit(page_size)
    )
    if scope.survey_id is not None:
        stmt = stmt.where(RawFeedbackInput.survey_id == scope.survey_id)
    return list(db.execute(stmt).scalars().all())


def reset_scope(db: Session, scope: AnalysisScope, *, page_size: int = 1000) -> tuple[int, int]:
    """Delete all segments of *scope* in pages of *page_size*, then zero job progress.

    Commits after every page so no single statement or transaction grows
    with the backlog. A unit-wide reset also clears the unit's per-survey
    jobs. Job status is left as is.

    Returns ``(deleted_segments, jobs_reset)``.
    """
    deleted = 0
    while True:
        ids = _segment_ids_page(db, scope, page_size)
        if not ids:
            break
        db.execute(delete(FeedbackSegment).where(FeedbackSegment.id.in_(ids)))
        db.commit()
        deleted += len(ids)
        logger.debug("Reset %s: deleted %s segments so far", scope, deleted)
        if len(ids) < page_size:
            break

    job_filter = [AnalysisJob.unit_id == scope.unit_id]
    if scope.survey_id is not None:
        job_filter = scope_job_conditions(scope)
    jobs = db.execute(select(AnalysisJob).where(*job_filter)).scalars().all()
    for job in jobs:
        job.processed_items = 0
        job.total_items = 0
        job.failed_batches = 0
        job.last_scanned_id = None
        job.logs = []
        append_job_log(job, f"Reset complete: {deleted} segments deleted")

    create_audit_log(
        db,
        entity_type="analysis_scope",
        entity_id=str(scope),
        action="ANALYSIS_SCOPE_RESET",
        new_value={"deleted_segments": deleted, "jobs_reset": len(jobs)},
        metadata={"unit_id": scope.unit_id, "survey_id": scope.survey_id},
    )
    db.commit()
    logger.info("Reset %s: deleted=%s jobs_reset=%s", scope, deleted, len(jobs))
    return deleted, len(jobs)
