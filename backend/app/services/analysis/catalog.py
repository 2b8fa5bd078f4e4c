"""Work catalog: which raw inputs in a scope still need classification."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.analysis import FeedbackSegment, RawFeedbackInput

from .contracts import AnalysisScope


def scope_conditions(scope: AnalysisScope) -> list:
    """WHERE clauses selecting the analyzable raw inputs of *scope*."""
    conditions = [
        RawFeedbackInput.target_unit_id == scope.unit_id,
        RawFeedbackInput.is_quantitative.is_(False),
        RawFeedbackInput.requires_analysis.is_(True),
    ]
    if scope.survey_id is not None:
        conditions.append(RawFeedbackInput.survey_id == scope.survey_id)
    return conditions


def has_segments():
    """Correlated EXISTS: the raw input already holds at least one segment."""
    return select(FeedbackSegment.id).where(FeedbackSegment.raw_input_id == RawFeedbackInput.id).exists()


def count_pending_items(db: Session, scope: AnalysisScope) -> int:
    """Approximate backlog size for progress totals.

    Advisory only: imports running concurrently can change it at any time.
    """
    stmt = (
        select(func.count())
        .select_from(RawFeedbackInput)
        .where(*scope_conditions(scope), ~has_segments())
    )
    return int(db.execute(stmt).scalar_one() or 0)


def count_analyzed_items(db: Session, scope: AnalysisScope) -> int:
    stmt = (
        select(func.count())
        .select_from(RawFeedbackInput)
        .where(*scope_conditions(scope), has_segments())
    )
    return int(db.execute(stmt).scalar_one() or 0)
