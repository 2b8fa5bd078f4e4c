"""Batch fetcher: next page of un-analyzed raw inputs, in ascending id order."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.analysis import RawFeedbackInput

from .catalog import has_segments, scope_conditions
from .contracts import AnalysisScope

logger = logging.getLogger(__name__)

MAX_EXCLUDE_IDS = 1000


def fetch_next_batch(
    db: Session,
    scope: AnalysisScope,
    *,
    batch_size: int,
    after_id: int | None = None,
    exclude_ids: Iterable[int] = (),
) -> list[RawFeedbackInput]:
    """Return up to *batch_size* analyzable inputs without segments.

    ``after_id`` is the run cursor: only ids strictly greater are returned.
    ``exclude_ids`` is pruned to ids above the cursor, since the cursor
    already excludes the rest; more than ``MAX_EXCLUDE_IDS`` remaining ids is
    a caller bug (advance the cursor instead).

    An empty list means the scope is exhausted.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    excluded = {int(i) for i in exclude_ids if after_id is None or int(i) > after_id}
    if len(excluded) > MAX_EXCLUDE_IDS:
        raise ValueError(f"exclude_ids has {len(excluded)} ids above the cursor (max {MAX_EXCLUDE_IDS})")

    stmt = select(RawFeedbackInput).where(*scope_conditions(scope), ~has_segments())
    if after_id is not None:
        stmt = stmt.where(RawFeedbackInput.id > after_id)
    if excluded:
        stmt = stmt.where(RawFeedbackInput.id.not_in(sorted(excluded)))
    stmt = stmt.order_by(RawFeedbackInput.id.asc()).limit(batch_size)

    batch = list(db.execute(stmt).scalars().all())
    logger.debug("Fetched %s inputs for %s after_id=%s", len(batch), scope, after_id)
    return batch
