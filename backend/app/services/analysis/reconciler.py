"""Result reconciler: classifier output -> feedback_segments rows.

Every input of a successfully classified batch ends up with at least one
segment. Inputs the classifier skipped get a placeholder (Neutral,
uncategorized, ``is_placeholder=True``) so they are never queued again.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.analysis import AnalysisCategory, FeedbackSegment, OrganizationUnit, RawFeedbackInput
from app.schemas.analysis import Sentiment
from app.services.ai.feedback_analysis.contracts import ItemAnalysis

from .contracts import BatchPersistError

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


def _normalize_name(name: str) -> str:
    return _WS_RE.sub(" ", name).strip().casefold()


class NameIndex:
    """Name -> id lookup: exact match first, then case/whitespace-insensitive."""

    def __init__(self, pairs: Iterable[tuple[int, str]]) -> None:
        self._exact: dict[str, int] = {}
        self._loose: dict[str, int] = {}
        for ident, name in pairs:
            if not name:
                continue
            self._exact.setdefault(name, ident)
            self._loose.setdefault(_normalize_name(name), ident)

    def resolve(self, name: str | None) -> int | None:
        if not name:
            return None
        if name in self._exact:
            return self._exact[name]
        return self._loose.get(_normalize_name(name))

    @classmethod
    def for_categories(cls, categories: Sequence[AnalysisCategory]) -> "NameIndex":
        return cls((c.id, c.name) for c in categories)

    @classmethod
    def for_units(cls, units: Sequence[OrganizationUnit]) -> "NameIndex":
        return cls((u.id, u.name) for u in units)


@dataclass
class SegmentDraft:
    raw_input_id: int
    segment_text: str
    sentiment: str
    category_id: int | None = None
    related_unit_ids: list[int] = field(default_factory=list)
    is_suggestion: bool = False
    is_placeholder: bool = False


@dataclass
class PersistSummary:
    items_written: int = 0
    segments_written: int = 0
    placeholders_written: int = 0
    items_skipped: int = 0


def placeholder_for(item: RawFeedbackInput) -> SegmentDraft:
    return SegmentDraft(
        raw_input_id=item.id,
        segment_text=item.raw_text or "Unprocessed",
        sentiment=Sentiment.NEUTRAL.value,
        is_placeholder=True,
    )


def reconcile_batch(
    batch: Sequence[RawFeedbackInput],
    analyses: Sequence[ItemAnalysis],
    *,
    categories: NameIndex,
    units: NameIndex,
) -> list[SegmentDraft]:
    """Map classifier output for *batch* to segment drafts.

    Unknown category names become ``None``; unresolvable related units are
    dropped. Inputs with no entry, or an entry without segments, get one
    placeholder.
    """
    by_id = {item.id: item for item in batch}
    drafts: list[SegmentDraft] = []
    covered: set[int] = set()

    for analysis in analyses:
        item = by_id.get(analysis.raw_input_id)
        if item is None:
            continue
        for seg in analysis.segments:
            category_id = categories.resolve(seg.category_name)
            if seg.category_name and category_id is None:
                logger.debug("Unknown category %r for input %s", seg.category_name, item.id)
            related_id = units.resolve(seg.related_unit_name)
            drafts.append(
                SegmentDraft(
                    raw_input_id=item.id,
                    segment_text=seg.text or item.raw_text,
                    sentiment=seg.sentiment,
                    category_id=category_id,
                    related_unit_ids=[related_id] if related_id is not None else [],
                    is_suggestion=seg.is_suggestion,
                )
            )
            covered.add(item.id)

    for item in batch:
        if item.id not in covered:
            drafts.append(placeholder_for(item))

    return drafts


def persist_segments(db: Session, drafts: Sequence[SegmentDraft]) -> PersistSummary:
    """Append *drafts* in one flush.

    Inputs that already hold segments (another run got there first) are
    skipped. On failure the session is rolled back and ``BatchPersistError``
    raised, so none of the batch survives.
    """
    summary = PersistSummary()
    if not drafts:
        return summary

    item_ids = {d.raw_input_id for d in drafts}
    try:
        already_done = set(
            db.execute(
                select(FeedbackSegment.raw_input_id).where(FeedbackSegment.raw_input_id.in_(item_ids)).distinct()
            ).scalars()
        )
        rows = [
            FeedbackSegment(
                raw_input_id=d.raw_input_id,
                segment_text=d.segment_text,
                sentiment=d.sentiment,
                category_id=d.category_id,
                related_unit_ids=list(d.related_unit_ids),
                is_suggestion=d.is_suggestion,
                is_placeholder=d.is_placeholder,
            )
            for d in drafts
            if d.raw_input_id not in already_done
        ]
        db.add_all(rows)
        db.flush()
    except SQLAlchemyError as exc:
        db.rollback()
        raise BatchPersistError(f"Saving {len(drafts)} segments failed: {exc}") from exc

    if already_done:
        logger.warning("Skipped %s inputs that already had segments: %s", len(already_done), sorted(already_done))

    summary.items_written = len({row.raw_input_id for row in rows})
    summary.segments_written = len(rows)
    summary.placeholders_written = sum(1 for row in rows if row.is_placeholder)
    summary.items_skipped = len(already_done)
    return summary
