# gamepulse/database.py
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import JSON, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

# JSONB on PostgreSQL (GIN-indexable payloads), plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    kwargs = {"echo": echo}
    if database_url.startswith("postgresql"):
        kwargs.update(pool_size=10, max_overflow=10, pool_timeout=5, pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    # Session factory for all DB interaction
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


def upsert(session: AsyncSession, model):
    """
    INSERT statement supporting ON CONFLICT for the session's dialect.

    Only PostgreSQL (production) and SQLite (tests) are supported.
    """
    if dialect_name(session) == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def greatest(session: AsyncSession, *args):
    if dialect_name(session) == "postgresql":
        return func.greatest(*args)
    # SQLite's multi-argument max() is scalar
    return func.max(*args)


def least(session: AsyncSession, *args):
    if dialect_name(session) == "postgresql":
        return func.least(*args)
    return func.min(*args)


def seconds_between(session: AsyncSession, start, end):
    """Elapsed seconds from `start` to `end` as a SQL expression."""
    if dialect_name(session) == "postgresql":
        return func.extract("epoch", end - start)
    return (func.julianday(end) - func.julianday(start)) * 86400.0


# Dependency Injection for FastAPI
async def get_db(request: Request):
    async with request.app.state.session_factory() as session:
        yield session
