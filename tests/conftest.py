# tests/conftest.py
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from faker import Faker

from gamepulse.cache import CacheAside, CacheProvider, MemoryCacheBackend
from gamepulse.config import Settings
from gamepulse.database import create_tables, make_engine, make_session_factory, utcnow
from gamepulse.main import create_app
from gamepulse.models import Event, EventStatus, new_event_id

fake = Faker()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'gamepulse.db'}"


@pytest_asyncio.fixture
async def engine(database_url):
    engine = make_engine(database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def memory_backend():
    return MemoryCacheBackend()


@pytest.fixture
def cache(memory_backend):
    return CacheAside(CacheProvider(memory_backend), query_timeout=2, retry_delay=0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        cache_backend="none",
        scheduler_enabled=False,
        queue_url=None,
        query_retry_delay_seconds=0,
        max_batch_size=100,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def app(settings, memory_backend):
    """Application with its lifespan running (httpx's ASGI transport does not run it)."""
    app = create_app(settings, cache_backend=memory_backend)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def game_ended(subject_id: Optional[str] = None, score: int = 100, duration: int = 60, platform: str = "ios"):
    return {
        "event_type": "game_ended",
        "subject_id": subject_id or f"player_{fake.uuid4()[:8]}",
        "payload": {"score": score, "duration_seconds": duration, "platform": platform, "game_mode": "classic"},
    }


async def add_event(
    session_factory,
    event_type: str,
    subject_id: str,
    payload: Optional[dict] = None,
    received_at: Optional[datetime] = None,
) -> str:
    """Store one event directly, with control over its receive time."""
    event = Event(
        id=new_event_id(),
        event_type=event_type,
        subject_id=subject_id,
        payload=payload if payload is not None else {},
        received_at=received_at or utcnow(),
        status=EventStatus.PENDING.value,
        processing_attempts=0,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(event)
    return event.id


def at(year, month, day, hour=12):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)
