import asyncio
import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

# Test environment; must be set before comicstudio is imported
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JOB_MONITOR_ENABLED"] = "false"
os.environ["GENERATION_PROVIDER"] = "mock"
os.environ["GENERATION_DELAY_SECONDS"] = "0.05"
os.environ["SIGNUP_BONUS_CREDITS"] = "10"

from httpx import AsyncClient, ASGITransport

from comicstudio.main import app
from comicstudio.core.database import Base, async_engine
from comicstudio.core.security import create_access_token
from comicstudio.services.generation import GenerationBackend
from comicstudio.services.job_store import JobStore
from comicstudio.services.job_worker import GenerationWorker
from comicstudio.services.jobs import JobManager
from comicstudio.services.ledger import CreditLedger
from comicstudio.services.scheduler import JobScheduler, job_scheduler
from comicstudio.services.subjects import PanelSubjectWriter


class ControlledBackend(GenerationBackend):
    """Generation backend that blocks until the test releases it."""

    name = "controlled"

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0
        self.progress: list[int] = []
        self.result = {
            "image_url": "/images/panel.jpg",
            "thumbnail_url": "/images/thumb.jpg",
            "prompt_used": "a rooftop chase at night",
        }
        self.error: Optional[Exception] = None

    async def generate(self, job_input, on_progress=None):
        self.calls += 1
        if on_progress:
            for value in self.progress:
                await on_progress(value)
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return dict(self.result)


class RecordingScheduler:
    """Scheduler stand-in that only records dispatched job ids."""

    def __init__(self):
        self.dispatched: list[str] = []
        self.error: Optional[Exception] = None

    def dispatch(self, job_id: str):
        self.dispatched.append(job_id)
        if self.error is not None:
            raise self.error
        return None


@pytest_asyncio.fixture(scope="function")
async def db() -> AsyncGenerator[None, None]:
    """Create a fresh database for each test."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await async_engine.dispose()


@pytest.fixture
def ledger(db) -> CreditLedger:
    return CreditLedger()


@pytest.fixture
def store(db) -> JobStore:
    return JobStore()


@pytest.fixture
def backend() -> ControlledBackend:
    return ControlledBackend()


@pytest.fixture
def worker(store, backend) -> GenerationWorker:
    return GenerationWorker(store=store, backend=backend, subject_writer=PanelSubjectWriter())


@pytest_asyncio.fixture
async def scheduler(worker) -> AsyncGenerator[JobScheduler, None]:
    scheduler = JobScheduler(worker=worker)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def manager(ledger, store, scheduler) -> JobManager:
    """Job manager whose jobs run on the controlled backend."""
    return JobManager(ledger=ledger, store=store, scheduler=scheduler)


@pytest.fixture
def recording_scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def idle_manager(ledger, store, recording_scheduler) -> JobManager:
    """Job manager that never starts its jobs."""
    return JobManager(ledger=ledger, store=store, scheduler=recording_scheduler)


@pytest.fixture
def make_account(ledger):
    async def _make(credits: int = 10, **kwargs) -> str:
        account = await ledger.open_account(initial_credits=credits, **kwargs)
        return account.account_id

    return _make


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    """Test client against the app (jobs run on the mock backend)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await job_scheduler.join()


@pytest.fixture
def auth_headers():
    def _headers(account_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(account_id)}"}

    return _headers


@pytest.fixture
def panel_input():
    """Typical panel generation input."""
    return {
        "scene_description": "A detective on a rainy rooftop, neon lights below",
        "characters": ["detective"],
        "style": {"art_style": "noir", "quality": "standard", "aspect_ratio": "16:9"},
    }
