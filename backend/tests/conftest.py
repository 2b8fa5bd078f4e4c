import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.models.analysis import Base
from app.utils.alerting import alert_tracker


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance across tests.
    get_settings.cache_clear()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()
    alert_tracker.reset()


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def fast_settings():
    """Settings without the inter-batch pause."""
    return Settings(analysis_batch_delay_seconds=0, analysis_batch_size=50)


@pytest.fixture
def job_manager(session_factory, fast_settings):
    from app.services.analysis.manager import AnalysisJobManager

    return AnalysisJobManager(session_factory=lambda: session_factory, settings=fast_settings)


@pytest_asyncio.fixture
async def client(job_manager):
    """In-process ASGI client wired to the test database and job manager."""
    from app.main import app
    from app.services.analysis.manager import get_job_manager

    app.dependency_overrides[get_job_manager] = lambda: job_manager
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        await job_manager.shutdown()
        app.dependency_overrides.pop(get_job_manager, None)


class AnalysisFactory:
    """Seeds units, taxonomy and raw comments for analysis tests."""

    def __init__(self, db):
        self.db = db

    def unit(self, name="Faculty of Law", categories=("Teaching", "Facilities"), context=None):
        from app.models.analysis import AnalysisCategory, OrganizationUnit

        unit = OrganizationUnit(name=name, analysis_context=context)
        self.db.add(unit)
        self.db.flush()
        for category in categories:
            self.db.add(AnalysisCategory(unit_id=unit.id, name=category))
        self.db.flush()
        return unit

    def inputs(self, unit, texts, *, survey_id=None, **fields):
        from app.models.analysis import RawFeedbackInput

        rows = [
            RawFeedbackInput(target_unit_id=unit.id, survey_id=survey_id, raw_text=text, **fields)
            for text in texts
        ]
        self.db.add_all(rows)
        self.db.flush()
        return rows

    def segment(self, raw_input, *, sentiment="Neutral", text=None):
        from app.models.analysis import FeedbackSegment

        seg = FeedbackSegment(
            raw_input_id=raw_input.id,
            segment_text=text or raw_input.raw_text,
            sentiment=sentiment,
            related_unit_ids=[],
        )
        self.db.add(seg)
        self.db.flush()
        return seg


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db):
    return AnalysisFactory(db)
