"""Analysis job control endpoints: start, stop, reset, progress."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.config import get_settings
from app.schemas.analysis import AnalysisScopeIn, JobProgressOut, ResetOut
from app.services.analysis.contracts import AnalysisScope, JobConflictError, ScopeNotFoundError
from app.services.analysis.manager import AnalysisJobManager, get_job_manager
from app.services.analysis.progress import JobProgress

router = APIRouter()


def _ensure_analysis_enabled() -> None:
    settings = get_settings()
    if not settings.enable_analysis_engine:
        raise HTTPException(status_code=404, detail="Not found")


def _to_out(progress: JobProgress) -> JobProgressOut:
    return JobProgressOut(
        job_id=progress.job_id,
        unit_id=progress.unit_id,
        survey_id=progress.survey_id,
        status=progress.status,
        processed=progress.processed,
        total=progress.total,
        percentage=progress.percentage,
        failed_batches=progress.failed_batches,
        analyzed=progress.analyzed,
        running=progress.running,
        logs=progress.logs,
        updated_at=progress.updated_at,
    )


@router.post(
    "/analysis/jobs",
    response_model=JobProgressOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start incremental analysis for a unit (optionally one survey)",
    dependencies=[Depends(_ensure_analysis_enabled)],
)
async def start_analysis(
    body: AnalysisScopeIn,
    manager: AnalysisJobManager = Depends(get_job_manager),
):
    scope = AnalysisScope(unit_id=body.unit_id, survey_id=body.survey_id)
    try:
        await manager.start(scope)
    except ScopeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    progress = manager.progress(scope)
    if progress is None:
        raise HTTPException(status_code=500, detail="Job was not persisted")
    return _to_out(progress)


@router.post(
    "/analysis/jobs/stop",
    response_model=JobProgressOut,
    summary="Stop the running analysis after the current batch",
    dependencies=[Depends(_ensure_analysis_enabled)],
)
async def stop_analysis(
    body: AnalysisScopeIn,
    manager: AnalysisJobManager = Depends(get_job_manager),
):
    scope = AnalysisScope(unit_id=body.unit_id, survey_id=body.survey_id)
    stopped = manager.stop(scope)
    if not stopped:
        raise HTTPException(status_code=404, detail="No active analysis job")

    progress = manager.progress(scope)
    if progress is None:
        raise HTTPException(status_code=404, detail="No active analysis job")
    return _to_out(progress)


@router.post(
    "/analysis/reset",
    response_model=ResetOut,
    summary="Delete all analysis results of a unit (optionally one survey)",
    dependencies=[Depends(_ensure_analysis_enabled)],
)
async def reset_analysis(
    body: AnalysisScopeIn,
    manager: AnalysisJobManager = Depends(get_job_manager),
):
    scope = AnalysisScope(unit_id=body.unit_id, survey_id=body.survey_id)
    try:
        deleted, jobs_reset = await manager.reset(scope)
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ResetOut(
        unit_id=scope.unit_id,
        survey_id=scope.survey_id,
        deleted_segments=deleted,
        jobs_reset=jobs_reset,
    )


@router.get(
    "/analysis/progress",
    response_model=JobProgressOut,
    summary="Progress of the newest analysis job for a scope",
    dependencies=[Depends(_ensure_analysis_enabled)],
)
def analysis_progress(
    unit_id: int = Query(..., ge=1),
    survey_id: Optional[int] = Query(None, ge=1),
    manager: AnalysisJobManager = Depends(get_job_manager),
):
    progress = manager.progress(AnalysisScope(unit_id=unit_id, survey_id=survey_id))
    if progress is None:
        raise HTTPException(status_code=404, detail="No analysis job for this scope")
    return _to_out(progress)
