"""
Pytest fixtures for campaign tracker testing.

Provides:
- A fresh SQLite database per test (aiosqlite) with all tables created
- Session factory / session / campaign fixtures
- A scripted metric fetcher
- An HTTP client bound to the FastAPI app
"""

import os
import tempfile
from collections import defaultdict
from pathlib import Path

# Settings are read once at import time; point them at throwaway storage first.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="campaign_tracker_tests_"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR / 'default.db'}"
os.environ["CELERY_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LIVE_TRACKER_ENABLED"] = "false"
os.environ["WATCHDOG_ENABLED"] = "false"
os.environ["FETCH_REDIS_SEMAPHORE_ENABLED"] = "false"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("APIFY_TOKEN", None)

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from campaign_tracker import models  # noqa: F401
from campaign_tracker.db import Base
from campaign_tracker.errors import FetchFailure
from campaign_tracker.integrations.fetcher import FetchedMetrics, engagement_rate
from campaign_tracker.services import campaigns as campaign_service
from campaign_tracker.services.scrape_supervisor import RetryPolicy


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Engine over a per-test SQLite file with the full schema."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def campaign(session):
    return await campaign_service.create_campaign(
        session, name="Summer Push", song_title="Heatwave", song_artist="The Lows"
    )


# =============================================================================
# FETCHER FIXTURES
# =============================================================================

class ScriptedFetcher:
    """Metric fetcher whose responses are scripted per URL.

    Each URL maps to a list of outcomes consumed in order; the last outcome
    repeats. An outcome is a metrics dict or an exception instance.
    Unscripted URLs return `default`.
    """

    name = "scripted"

    def __init__(self, default=None):
        self.default = default or {"views": 100, "likes": 10, "comments": 5, "shares": 2}
        self.script = {}
        self.calls = defaultdict(int)

    def set(self, url, *outcomes):
        self.script[url] = list(outcomes)

    async def fetch(self, url, platform):
        self.calls[url] += 1
        outcomes = self.script.get(url)
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        else:
            outcome = self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return FetchedMetrics(
            **outcome,
            engagement_rate=engagement_rate(
                outcome["views"], outcome["likes"], outcome["comments"], outcome["shares"]
            ),
        )


@pytest.fixture
def fetcher():
    return ScriptedFetcher()


@pytest.fixture
def fast_policy():
    """Three attempts with no backoff delay."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def no_sleep():
    async def _sleep(_seconds):
        return None
    return _sleep


@pytest.fixture
def retryable_failure():
    return FetchFailure("upstream 503", retryable=True)


# =============================================================================
# HTTP FIXTURES
# =============================================================================

@pytest.fixture
async def client(session_factory, monkeypatch):
    """HTTP client against the app; dispatched jobs are recorded, not run."""
    from campaign_tracker.db import get_session
    from campaign_tracker.main import app
    from campaign_tracker.services import scrape_jobs

    dispatched = []

    def _dispatch(job_id):
        dispatched.append(job_id)
        return "inline"

    monkeypatch.setattr(scrape_jobs, "dispatch_job", _dispatch)

    async def _get_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        c.dispatched = dispatched
        yield c
    app.dependency_overrides.clear()
