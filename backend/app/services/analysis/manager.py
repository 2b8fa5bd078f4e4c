"""In-process registry of running analysis jobs.

Keeps one ``JobContext`` per scope and a per-scope ``asyncio.Lock`` so that
inside one process at most one run per (unit, survey) is active and resets
never overlap a run. Across processes the PENDING -> PROCESSING
compare-and-set in ``state.claim_job`` is the guard.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, get_settings
from app.core.dependencies import get_session_factory
from app.models.analysis import OrganizationUnit
from app.schemas.analysis import JobStatus
from app.services.ai.common.audit import create_audit_log

from . import state
from .contracts import AnalysisScope, JobConflictError, ScopeNotFoundError
from .engine import Classifier, JobContext, run_job
from .progress import JobProgress, get_progress

logger = logging.getLogger(__name__)


class AnalysisJobManager:
    def __init__(
        self,
        session_factory: Callable[[], sessionmaker] = get_session_factory,
        classifier: Classifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._classifier = classifier
        self._settings = settings
        self._contexts: dict[AnalysisScope, JobContext] = {}
        self._locks: dict[AnalysisScope, asyncio.Lock] = {}

    def _lock_for(self, scope: AnalysisScope) -> asyncio.Lock:
        return self._locks.setdefault(scope, asyncio.Lock())

    def is_running(self, scope: AnalysisScope) -> bool:
        ctx = self._contexts.get(scope)
        return ctx is not None and ctx.running

    def context_for(self, scope: AnalysisScope) -> JobContext | None:
        return self._contexts.get(scope)

    async def start(self, scope: AnalysisScope) -> JobContext:
        """Create (or reuse a PENDING) job for *scope* and schedule its run.

        Raises:
            ScopeNotFoundError: the unit does not exist.
            JobConflictError: a run is active here, or the scope's job is
                PROCESSING elsewhere (stop it first).
        """
        async with self._lock_for(scope):
            if self.is_running(scope):
                raise JobConflictError(f"Analysis already running for {scope}")

            db = self._session_factory()()
            try:
                if db.get(OrganizationUnit, scope.unit_id) is None:
                    raise ScopeNotFoundError(f"Unit {scope.unit_id} not found")
                job, created = state.create_job(db, scope)
                if not created and job.status == JobStatus.PROCESSING.value:
                    db.rollback()
                    raise JobConflictError(
                        f"Job {job.id} for {scope} is already PROCESSING in another worker; stop it first"
                    )
                create_audit_log(
                    db,
                    entity_type="analysis_job",
                    entity_id=str(job.id),
                    action="ANALYSIS_JOB_STARTED",
                    new_value={"status": job.status, "reused": not created},
                    metadata={"unit_id": scope.unit_id, "survey_id": scope.survey_id},
                )
                db.commit()
                job_id = job.id
            finally:
                db.close()

            ctx = JobContext(scope=scope, job_id=job_id)
            self._contexts[scope] = ctx
            ctx.task = asyncio.create_task(self._run(ctx), name=f"analysis-job-{job_id}")
            logger.info("Scheduled analysis job %s for %s", job_id, scope)
            return ctx

    async def _run(self, ctx: JobContext) -> str | None:
        kwargs = {"classifier": self._classifier} if self._classifier is not None else {}
        kwargs["settings"] = self._settings or get_settings()
        try:
            return await run_job(ctx, self._session_factory(), **kwargs)
        finally:
            if self._contexts.get(ctx.scope) is ctx:
                del self._contexts[ctx.scope]

    def stop(self, scope: AnalysisScope) -> list[int]:
        """Signal the local run (if any) and persist STOPPED for the scope's active jobs.

        The in-flight batch still finishes; the loop exits before the next one.
        """
        ctx = self._contexts.get(scope)
        if ctx is not None:
            ctx.request_stop()

        db = self._session_factory()()
        try:
            stopped = state.request_stop(db, scope, reason="stop requested by user")
            db.commit()
        finally:
            db.close()

        if ctx is not None and ctx.job_id not in stopped:
            stopped.append(ctx.job_id)
        logger.info("Stop requested for %s: jobs=%s", scope, stopped)
        return stopped

    def _overlapping_runs(self, scope: AnalysisScope) -> list[AnalysisScope]:
        """Running scopes that share raw inputs with *scope*."""
        return [
            other
            for other, ctx in self._contexts.items()
            if ctx.running
            and other.unit_id == scope.unit_id
            and (scope.survey_id is None or other.survey_id is None or other.survey_id == scope.survey_id)
        ]

    async def reset(self, scope: AnalysisScope) -> tuple[int, int]:
        """Delete the scope's segments page by page and zero its progress."""
        async with self._lock_for(scope):
            busy = self._overlapping_runs(scope)
            if busy:
                raise JobConflictError(f"Cannot reset {scope} while analysis is running for {busy[0]}")
            db = self._session_factory()()
            try:
                page_size = (self._settings or get_settings()).effective_reset_page_size
                return state.reset_scope(db, scope, page_size=page_size)
            finally:
                db.close()

    def progress(self, scope: AnalysisScope) -> JobProgress | None:
        db = self._session_factory()()
        try:
            return get_progress(db, scope, running=self.is_running(scope))
        finally:
            db.close()

    async def wait(self, scope: AnalysisScope) -> str | None:
        """Wait for the scope's local run, then return the newest job's status."""
        ctx = self._contexts.get(scope)
        if ctx is not None and ctx.task is not None:
            return await ctx.task
        progress = self.progress(scope)
        return progress.status if progress else None

    async def shutdown(self) -> None:
        """Cancel every running job; each one records itself as STOPPED."""
        tasks = [ctx.task for ctx in self._contexts.values() if ctx.task is not None and not ctx.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._contexts.clear()


job_manager = AnalysisJobManager()


def get_job_manager() -> AnalysisJobManager:
    return job_manager
