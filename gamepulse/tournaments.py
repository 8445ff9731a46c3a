# gamepulse/tournaments.py
"""Tournament calendar: weekly tournaments, explicit creation and teardown."""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from gamepulse.database import upsert, utcnow
from gamepulse.models import LedgerEntry, Tournament, TournamentStanding
from gamepulse.store import tournament_scope

logger = logging.getLogger(__name__)


def week_bounds(now: datetime):
    """Monday 00:00 UTC of `now`'s ISO week, and the following Monday."""
    now = now.astimezone(timezone.utc)
    start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=7)


def weekly_tournament_id(now: datetime) -> str:
    year, week, _ = now.astimezone(timezone.utc).isocalendar()
    return f"weekly_{year}_{week:02d}"


async def create_tournament(
    session_factory: sessionmaker,
    tournament_id: str,
    name: str,
    starts_at: datetime,
    ends_at: datetime,
) -> bool:
    """Insert a tournament unless one with that id exists. Returns True if created."""
    async with session_factory() as session:
        async with session.begin():
            stmt = upsert(session, Tournament).values(
                id=tournament_id,
                name=name,
                starts_at=starts_at,
                ends_at=ends_at,
                created_at=utcnow(),
            ).on_conflict_do_nothing(index_elements=["id"])
            result = await session.execute(stmt)
    created = result.rowcount > 0
    if created:
        logger.info("Tournament %s created (%s -> %s)", tournament_id, starts_at, ends_at)
    return created


async def ensure_weekly_tournament(session_factory: sessionmaker, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    starts_at, ends_at = week_bounds(now)
    tournament_id = weekly_tournament_id(now)
    created = await create_tournament(
        session_factory,
        tournament_id,
        f"Weekly Championship {starts_at:%Y-%m-%d}",
        starts_at,
        ends_at,
    )
    return {"tournament_id": tournament_id, "created": created}


async def active_tournaments(
    session: AsyncSession, now: datetime, grace: timedelta = timedelta(0)
) -> List[Tournament]:
    """Tournaments that started and ended less than `grace` ago (late events still fold)."""
    result = await session.execute(
        select(Tournament)
        .where(Tournament.starts_at <= now, Tournament.ends_at > now - grace)
        .order_by(Tournament.starts_at)
    )
    return list(result.scalars().all())


async def current_tournament(session: AsyncSession, now: Optional[datetime] = None) -> Optional[Tournament]:
    now = now or utcnow()
    result = await session.execute(
        select(Tournament)
        .where(Tournament.starts_at <= now, Tournament.ends_at > now)
        .order_by(Tournament.starts_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def teardown_tournament(session_factory: sessionmaker, tournament_id: str) -> bool:
    """Delete a tournament with its standings and ledger entries."""
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                delete(TournamentStanding).where(TournamentStanding.tournament_id == tournament_id)
            )
            await session.execute(
                delete(LedgerEntry).where(LedgerEntry.scope == tournament_scope(tournament_id))
            )
            result = await session.execute(delete(Tournament).where(Tournament.id == tournament_id))
    removed = result.rowcount > 0
    if removed:
        logger.info("Tournament %s torn down", tournament_id)
    return removed
