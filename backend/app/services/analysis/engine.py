"""Incremental batch analysis loop.

One run walks a scope's un-analyzed raw inputs in ascending id order:

    estimate -> fetch batch -> classify -> reconcile + persist -> advance
    -> check stop -> pause -> fetch next ...

until the fetcher comes back empty. Batches run strictly one at a time.
A failed batch is logged and skipped for the rest of the run (the cursor
moves past it) but its inputs hold no segments, so the next start retries
them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.models.analysis import (
    AnalysisCategory,
    AnalysisJob,
    OrganizationUnit,
    RawFeedbackInput,
    UnitAnalysisInstruction,
)
from app.schemas.analysis import JobStatus
from app.services.ai.common.audit import create_audit_log, log_ai_run
from app.services.ai.common.router import FEEDBACK_SCOPE
from app.services.ai.feedback_analysis.contracts import (
    ClassificationError,
    ClassificationOutcome,
    ClassificationRequest,
    FeedbackItem,
    TaxonomyEntry,
)
from app.services.ai.feedback_analysis.service import classify_feedback_batch

from . import state
from .catalog import count_pending_items
from .contracts import AnalysisScope, BatchPersistError
from .fetcher import fetch_next_batch
from .progress import append_job_log
from .reconciler import NameIndex, persist_segments, reconcile_batch

logger = logging.getLogger(__name__)

Classifier = Callable[[ClassificationRequest], Awaitable[ClassificationOutcome]]


@dataclass
class JobContext:
    """Per-run handle: which job, and how to ask it to stop."""

    scope: AnalysisScope
    job_id: int
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def pause(self, seconds: float) -> None:
        """Sleep between batches, waking early if a stop is requested."""
        if seconds <= 0 or self.stop_requested:
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


@dataclass
class UnitResources:
    unit: OrganizationUnit
    categories: list[AnalysisCategory]
    instructions: list[str]
    all_units: list[OrganizationUnit]


def load_unit_resources(db: Session, unit_id: int) -> UnitResources | None:
    unit = db.get(OrganizationUnit, unit_id)
    if unit is None:
        return None
    categories = list(
        db.execute(
            select(AnalysisCategory).where(AnalysisCategory.unit_id == unit_id).order_by(AnalysisCategory.id)
        ).scalars()
    )
    extra = db.execute(
        select(UnitAnalysisInstruction.instruction)
        .where(UnitAnalysisInstruction.unit_id == unit_id)
        .order_by(UnitAnalysisInstruction.id)
    ).scalars()
    instructions = [text for text in [unit.analysis_context, *extra] if text]
    all_units = list(db.execute(select(OrganizationUnit).order_by(OrganizationUnit.id)).scalars())
    return UnitResources(unit=unit, categories=categories, instructions=instructions, all_units=all_units)


def build_request(batch: list[RawFeedbackInput], resources: UnitResources) -> ClassificationRequest:
    return ClassificationRequest(
        items=[FeedbackItem(id=item.id, text=item.raw_text) for item in batch],
        categories=[TaxonomyEntry(name=c.name, description=c.description or "") for c in resources.categories],
        unit_names=[u.name for u in resources.all_units],
        unit_name=resources.unit.name,
        instructions=resources.instructions,
    )


async def run_job(
    ctx: JobContext,
    session_factory: sessionmaker,
    *,
    classifier: Classifier = classify_feedback_batch,
    settings: Settings | None = None,
) -> str | None:
    """Drive one job to a terminal status. Returns the final status.

    Returns without touching the job when it is not PENDING (another worker
    claimed it first).
    """
    settings = settings or get_settings()
    db = session_factory()
    try:
        job = db.get(AnalysisJob, ctx.job_id)
        if job is None:
            logger.warning("Analysis job %s vanished before start", ctx.job_id)
            return None
        if not state.claim_job(db, job.id):
            db.rollback()
            db.refresh(job)
            logger.info("Analysis job %s not claimed: status is %s", job.id, job.status)
            return job.status
        db.commit()
        db.refresh(job)

        try:
            await _process(db, ctx, job, classifier=classifier, settings=settings)
        except asyncio.CancelledError:
            db.rollback()
            state.stop_job(db, job, reason="interrupted by shutdown", log_limit=settings.analysis_log_limit)
            db.commit()
            raise
        except Exception as exc:
            logger.exception("Analysis job %s crashed", job.id)
            db.rollback()
            db.refresh(job)
            if job.status == JobStatus.PROCESSING.value:
                state.fail_job(db, job, f"Unexpected error: {exc}", log_limit=settings.analysis_log_limit)
                db.commit()

        db.refresh(job)
        return job.status
    finally:
        db.close()


async def _process(
    db: Session,
    ctx: JobContext,
    job: AnalysisJob,
    *,
    classifier: Classifier,
    settings: Settings,
) -> None:
    scope = ctx.scope
    log_limit = settings.analysis_log_limit
    batch_size = settings.effective_batch_size
    max_failures = max(1, settings.analysis_max_consecutive_failures)

    resources = load_unit_resources(db, scope.unit_id)
    if resources is None:
        state.fail_job(db, job, f"Unit {scope.unit_id} not found.", log_limit=log_limit)
        db.commit()
        return
    if not resources.categories:
        state.fail_job(
            db, job, "No categories found for this unit. Please define taxonomy first.", log_limit=log_limit
        )
        db.commit()
        return

    categories = NameIndex.for_categories(resources.categories)
    units = NameIndex.for_units(resources.all_units)

    job.total_items = count_pending_items(db, scope)
    append_job_log(
        job,
        f"Started: {job.total_items} comments pending, batch size {batch_size}.",
        limit=log_limit,
    )
    db.commit()
    logger.info("Analysis job %s started for %s: pending=%s", job.id, scope, job.total_items)

    cursor: int | None = None
    batch_no = 0
    consecutive_failures = 0

    while True:
        if ctx.stop_requested or state.stop_requested(db, job):
            _finish_stopped(db, job, log_limit)
            return

        try:
            batch = fetch_next_batch(db, scope, batch_size=batch_size, after_id=cursor)
        except SQLAlchemyError as exc:
            db.rollback()
            consecutive_failures += 1
            logger.warning("Fetch failed for job %s: %s", job.id, exc)
            append_job_log(job, f"Fetch error: {exc.__class__.__name__}. Retrying.", limit=log_limit)
            db.commit()
            if consecutive_failures >= max_failures:
                state.fail_job(db, job, f"{consecutive_failures} consecutive failures.", log_limit=log_limit)
                db.commit()
                return
            await ctx.pause(settings.analysis_batch_delay_seconds)
            continue

        if not batch:
            state.complete_job(db, job, log_limit=log_limit)
            db.commit()
            return

        batch_no += 1
        batch_cursor = batch[-1].id
        try:
            outcome = await classifier(build_request(batch, resources))
            drafts = reconcile_batch(batch, outcome.analyses, categories=categories, units=units)
            summary = persist_segments(db, drafts)
            log_ai_run(
                db,
                scope=FEEDBACK_SCOPE,
                entity_id=f"job:{job.id}",
                provider_result=outcome.provider_result,
                prompt_text=outcome.prompt,
                parsed_output={"returned": len(outcome.analyses), "submitted": len(batch)},
                extra_meta={"job_id": job.id, "batch_no": batch_no},
            )
            if summary.placeholders_written:
                create_audit_log(
                    db,
                    entity_type="analysis_job",
                    entity_id=str(job.id),
                    action="AI_FEEDBACK_PLACEHOLDERS_CREATED",
                    new_value={"count": summary.placeholders_written},
                    metadata={"batch_no": batch_no},
                )
            # A stop issued during the classifier call may have appended to the log.
            db.refresh(job, attribute_names=["logs"])
            state.record_batch_success(
                job,
                items=summary.items_written,
                cursor=batch_cursor,
                message=(
                    f"Batch {batch_no}: {summary.items_written} comments, "
                    f"{summary.segments_written} segments ({summary.placeholders_written} uncategorized)."
                ),
                log_limit=log_limit,
            )
            db.commit()
            consecutive_failures = 0
        except (ClassificationError, BatchPersistError, SQLAlchemyError) as exc:
            db.rollback()
            consecutive_failures += 1
            logger.warning("Batch %s of job %s failed: %s", batch_no, job.id, exc)
            state.record_batch_failure(
                db,
                job,
                cursor=batch_cursor,
                message=f"Batch {batch_no} failed ({len(batch)} comments left for the next run): {exc}",
                log_limit=log_limit,
            )
            db.commit()
            if consecutive_failures >= max_failures:
                state.fail_job(
                    db, job, f"{consecutive_failures} consecutive batch failures.", log_limit=log_limit
                )
                db.commit()
                return

        cursor = batch_cursor

        if len(batch) == batch_size:
            await ctx.pause(settings.analysis_batch_delay_seconds)


def _finish_stopped(db: Session, job: AnalysisJob, log_limit: int) -> None:
    # Already STOPPED when the stop came through the database.
    state.stop_job(db, job, reason="stop signal received between batches", log_limit=log_limit)
    db.commit()
    logger.info("Analysis job %s stopped after %s processed", job.id, job.processed_items)
