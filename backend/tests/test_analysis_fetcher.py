"""Work catalog + batch fetcher: eligibility, ordering, cursor, scope."""

import pytest

from app.services.analysis.catalog import count_analyzed_items, count_pending_items
from app.services.analysis.contracts import AnalysisScope
from app.services.analysis.fetcher import MAX_EXCLUDE_IDS, fetch_next_batch


def test_counts_split_pending_and_analyzed(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, [f"comment {i}" for i in range(5)])
    factory.segment(rows[0])
    factory.segment(rows[0], text="second segment of the same comment")
    factory.segment(rows[3])
    db.commit()

    scope = AnalysisScope(unit.id)
    assert count_pending_items(db, scope) == 3
    assert count_analyzed_items(db, scope) == 2


def test_quantitative_and_opted_out_inputs_are_never_eligible(db, factory):
    unit = factory.unit()
    factory.inputs(unit, ["4"], is_quantitative=True)
    factory.inputs(unit, ["skip me"], requires_analysis=False)
    eligible = factory.inputs(unit, ["real comment"])
    db.commit()

    scope = AnalysisScope(unit.id)
    assert count_pending_items(db, scope) == 1
    assert [r.id for r in fetch_next_batch(db, scope, batch_size=10)] == [eligible[0].id]


def test_batch_is_ascending_and_limited(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, [f"c{i}" for i in range(7)])
    db.commit()

    batch = fetch_next_batch(db, AnalysisScope(unit.id), batch_size=3)
    assert [r.id for r in batch] == [r.id for r in rows[:3]]


def test_cursor_skips_everything_at_or_below(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, [f"c{i}" for i in range(6)])
    db.commit()

    scope = AnalysisScope(unit.id)
    first = fetch_next_batch(db, scope, batch_size=4)
    second = fetch_next_batch(db, scope, batch_size=4, after_id=first[-1].id)
    third = fetch_next_batch(db, scope, batch_size=4, after_id=second[-1].id)

    assert [r.id for r in second] == [r.id for r in rows[4:]]
    assert third == []


def test_analyzed_inputs_are_not_refetched(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, ["a", "b", "c"])
    factory.segment(rows[1])
    db.commit()

    batch = fetch_next_batch(db, AnalysisScope(unit.id), batch_size=10)
    assert [r.id for r in batch] == [rows[0].id, rows[2].id]


def test_exclude_ids_are_skipped(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, ["a", "b", "c"])
    db.commit()

    batch = fetch_next_batch(db, AnalysisScope(unit.id), batch_size=10, exclude_ids=[rows[0].id])
    assert [r.id for r in batch] == [rows[1].id, rows[2].id]


def test_exclusions_below_cursor_do_not_count_against_limit(db, factory):
    unit = factory.unit()
    rows = factory.inputs(unit, ["a", "b"])
    db.commit()

    scope = AnalysisScope(unit.id)
    stale = range(-MAX_EXCLUDE_IDS - 5, 0)
    batch = fetch_next_batch(db, scope, batch_size=10, after_id=0, exclude_ids=stale)
    assert [r.id for r in batch] == [r.id for r in rows]

    with pytest.raises(ValueError):
        fetch_next_batch(db, scope, batch_size=10, exclude_ids=range(1, MAX_EXCLUDE_IDS + 2))


def test_survey_scope_and_other_units_are_isolated(db, factory):
    law = factory.unit("Faculty of Law")
    library = factory.unit("Library")
    spring = factory.inputs(law, ["spring 1", "spring 2"], survey_id=1)
    autumn = factory.inputs(law, ["autumn 1"], survey_id=2)
    factory.inputs(library, ["library comment"], survey_id=1)
    db.commit()

    survey_batch = fetch_next_batch(db, AnalysisScope(law.id, survey_id=1), batch_size=10)
    unit_batch = fetch_next_batch(db, AnalysisScope(law.id), batch_size=10)

    assert [r.id for r in survey_batch] == [r.id for r in spring]
    assert [r.id for r in unit_batch] == [r.id for r in spring + autumn]
    assert count_pending_items(db, AnalysisScope(law.id, survey_id=2)) == 1


def test_batch_size_must_be_positive(db, factory):
    unit = factory.unit()
    db.commit()
    with pytest.raises(ValueError):
        fetch_next_batch(db, AnalysisScope(unit.id), batch_size=0)
