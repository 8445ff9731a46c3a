# gamepulse/views.py
"""
Dashboard views served through the cache-aside layer.

Each view declares its filters, a TTL sized to how fast the data moves, and a
read-only query against the aggregate tables (a few also count recent rows of
the event store that have not been rolled up yet).
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import distinct, func, select
from sqlalchemy.orm import sessionmaker

from gamepulse.cache import CacheAside
from gamepulse.database import utcnow
from gamepulse.exceptions import FilterError, UnknownViewError
from gamepulse.models import (
    KPI_COUNTERS,
    ActivityDaily,
    Event,
    EventStatus,
    EventType,
    KpiDaily,
    LeaderboardEntry,
    Player,
    SubjectCohort,
    TournamentStanding,
)
from gamepulse.tournaments import current_tournament

RETENTION_DAYS = (1, 7, 30)


# --- FILTERS ---

class Filters(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LeaderboardFilters(Filters):
    limit: int = Field(default=15, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class PlayerFilters(Filters):
    subject_id: str = Field(min_length=1, max_length=255)


class TournamentFilters(Filters):
    tournament_id: Optional[str] = Field(default=None, max_length=100)
    limit: int = Field(default=50, ge=1, le=100)


class DateRangeFilters(Filters):
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def resolved(self, max_days: int, default_days: int, today: date) -> "DateRangeFilters":
        end = self.end_date or today
        start = self.start_date or end - timedelta(days=default_days - 1)
        if start > end:
            raise FilterError("start_date must not be after end_date")
        if (end - start).days + 1 > max_days:
            raise FilterError(f"date range may span at most {max_days} days")
        return self.model_copy(update={"start_date": start, "end_date": end})


class KpiFilters(DateRangeFilters):
    platform: Optional[str] = Field(default=None, max_length=20)


class LiveEventsFilters(Filters):
    minutes: int = Field(default=60, ge=1, le=60)
    limit: int = Field(default=10, ge=1, le=50)


# --- QUERIES ---

async def leaderboard_rows(session_factory: sessionmaker, filters: LeaderboardFilters) -> List[dict]:
    async with session_factory() as session:
        result = await session.execute(
            select(LeaderboardEntry, Player.nickname)
            .outerjoin(Player, Player.subject_id == LeaderboardEntry.subject_id)
            .order_by(LeaderboardEntry.best_score.desc(), LeaderboardEntry.subject_id)
            .offset(filters.offset)
            .limit(filters.limit)
        )
        rows = result.all()
    return [
        {
            "rank": rank,
            "subject_id": entry.subject_id,
            "nickname": nickname,
            "best_score": entry.best_score,
            "games_played": entry.games_played,
            "total_playtime_seconds": entry.total_playtime_seconds,
            "last_played_at": entry.last_played_at,
        }
        for rank, (entry, nickname) in enumerate(rows, start=filters.offset + 1)
    ]


async def player_rows(session_factory: sessionmaker, filters: PlayerFilters) -> List[dict]:
    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, filters.subject_id)
        if entry is None:
            return []
        ahead = await session.execute(
            select(func.count()).select_from(LeaderboardEntry)
            .where(LeaderboardEntry.best_score > entry.best_score)
        )
        player = await session.get(Player, filters.subject_id)
        return [{
            "rank": ahead.scalar_one() + 1,
            "subject_id": entry.subject_id,
            "nickname": player.nickname if player else None,
            "best_score": entry.best_score,
            "games_played": entry.games_played,
            "total_playtime_seconds": entry.total_playtime_seconds,
            "last_played_at": entry.last_played_at,
        }]


async def tournament_rows(session_factory: sessionmaker, filters: TournamentFilters) -> List[dict]:
    async with session_factory() as session:
        if filters.tournament_id:
            tournament_id = filters.tournament_id
        else:
            tournament = await current_tournament(session)
            if tournament is None:
                return []
            tournament_id = tournament.id
        result = await session.execute(
            select(TournamentStanding, Player.nickname)
            .outerjoin(Player, Player.subject_id == TournamentStanding.subject_id)
            .where(TournamentStanding.tournament_id == tournament_id)
            .order_by(TournamentStanding.best_score.desc(), TournamentStanding.subject_id)
            .limit(filters.limit)
        )
        rows = result.all()
    return [
        {
            "rank": rank,
            "tournament_id": standing.tournament_id,
            "subject_id": standing.subject_id,
            "nickname": nickname,
            "best_score": standing.best_score,
            "attempts": standing.attempts,
            "first_attempt_at": standing.first_attempt_at,
            "last_attempt_at": standing.last_attempt_at,
        }
        for rank, (standing, nickname) in enumerate(rows, start=1)
    ]


async def kpi_daily_rows(session_factory: sessionmaker, filters: KpiFilters) -> List[dict]:
    columns = [func.sum(getattr(KpiDaily, name)).label(name) for name in KPI_COUNTERS]
    query = (
        select(KpiDaily.day, *columns)
        .where(KpiDaily.day >= filters.start_date, KpiDaily.day <= filters.end_date)
        .group_by(KpiDaily.day)
        .order_by(KpiDaily.day)
    )
    if filters.platform:
        query = query.where(KpiDaily.platform == filters.platform.lower())
    async with session_factory() as session:
        result = await session.execute(query)
        rows = result.all()
    out = []
    for row in rows:
        data = {name: int(getattr(row, name) or 0) for name in KPI_COUNTERS}
        data["day"] = row.day
        data["revenue_usd"] = round(data["revenue_cents"] / 100, 2)
        out.append(data)
    return out


async def retention_rows(session_factory: sessionmaker, filters: DateRangeFilters) -> List[dict]:
    horizon = filters.end_date + timedelta(days=max(RETENTION_DAYS))
    cohort_subjects = select(SubjectCohort.subject_id).where(
        SubjectCohort.first_seen_day >= filters.start_date,
        SubjectCohort.first_seen_day <= filters.end_date,
    )
    async with session_factory() as session:
        cohorts = await session.execute(
            select(SubjectCohort.subject_id, SubjectCohort.first_seen_day).where(
                SubjectCohort.first_seen_day >= filters.start_date,
                SubjectCohort.first_seen_day <= filters.end_date,
            )
        )
        first_seen = {subject: day for subject, day in cohorts.all()}
        activity = await session.execute(
            select(ActivityDaily.subject_id, ActivityDaily.day)
            .where(
                ActivityDaily.subject_id.in_(cohort_subjects),
                ActivityDaily.day > filters.start_date,
                ActivityDaily.day <= horizon,
            )
            .distinct()
        )
        active_days = defaultdict(set)
        for subject, day in activity.all():
            active_days[subject].add(day)

    sizes = defaultdict(int)
    retained = defaultdict(lambda: defaultdict(int))
    for subject, cohort_day in first_seen.items():
        sizes[cohort_day] += 1
        for offset in RETENTION_DAYS:
            if cohort_day + timedelta(days=offset) in active_days[subject]:
                retained[cohort_day][offset] += 1

    rows = []
    for cohort_day in sorted(sizes):
        row = {"cohort_day": cohort_day, "cohort_size": sizes[cohort_day]}
        for offset in RETENTION_DAYS:
            count = retained[cohort_day][offset]
            row[f"d{offset}_retained"] = count
            row[f"d{offset}_rate"] = round(count / sizes[cohort_day], 4)
        rows.append(row)
    return rows


async def overview_rows(session_factory: sessionmaker, filters: Filters) -> List[dict]:
    now = utcnow()
    today = now.date()
    midnight = datetime.combine(today, time.min, tzinfo=timezone.utc)
    async with session_factory() as session:
        total_players = await session.execute(select(func.count()).select_from(SubjectCohort))
        dau = await session.execute(
            select(func.count(distinct(ActivityDaily.subject_id))).where(ActivityDaily.day == today)
        )
        # live from the event store: today's games, rolled up or not
        games_today = await session.execute(
            select(func.count()).select_from(Event).where(
                Event.event_type == EventType.GAME_ENDED.value, Event.received_at >= midnight
            )
        )
        pending = await session.execute(
            select(func.count()).select_from(Event).where(Event.status == EventStatus.PENDING.value)
        )
        top_score = await session.execute(select(func.max(LeaderboardEntry.best_score)))
    return [{
        "total_players": total_players.scalar_one(),
        "dau": dau.scalar_one(),
        "games_today": games_today.scalar_one(),
        "events_pending": pending.scalar_one(),
        "top_score": top_score.scalar_one() or 0,
    }]


async def live_event_rows(session_factory: sessionmaker, filters: LiveEventsFilters) -> List[dict]:
    since = utcnow() - timedelta(minutes=filters.minutes)
    count = func.count().label("count")
    async with session_factory() as session:
        result = await session.execute(
            select(Event.event_type, count, func.count(distinct(Event.subject_id)).label("subjects"))
            .where(Event.received_at >= since)
            .group_by(Event.event_type)
            .order_by(count.desc(), Event.event_type)
            .limit(filters.limit)
        )
        rows = result.all()
    return [{"event_type": row.event_type, "count": row.count, "subjects": row.subjects} for row in rows]


# --- REGISTRY ---

@dataclass(frozen=True)
class View:
    name: str
    ttl: int
    filters: Type[Filters]
    query: Callable[[sessionmaker, Any], Awaitable[List[dict]]]


VIEWS: Dict[str, View] = {
    view.name: view
    for view in (
        View("leaderboard", 300, LeaderboardFilters, leaderboard_rows),
        View("player", 60, PlayerFilters, player_rows),
        View("tournament", 30, TournamentFilters, tournament_rows),
        View("kpi-daily", 300, KpiFilters, kpi_daily_rows),
        View("retention", 3600, DateRangeFilters, retention_rows),
        View("overview", 300, Filters, overview_rows),
        View("live-events", 30, LiveEventsFilters, live_event_rows),
    )
}


async def serve_view(
    name: str,
    params: Mapping[str, Any],
    cache: CacheAside,
    session_factory: sessionmaker,
    max_window_days: int = 90,
    default_window_days: int = 30,
) -> dict:
    """
    Resolve a view through the cache-aside layer.

    Raises UnknownViewError, pydantic.ValidationError / FilterError for bad
    filters, and whatever the cache layer surfaces for failed queries.
    """
    view = VIEWS.get(name)
    if view is None:
        raise UnknownViewError(name)

    filters = view.filters.model_validate(dict(params))
    if isinstance(filters, DateRangeFilters):
        filters = filters.resolved(max_window_days, default_window_days, utcnow().date())
    filter_values = filters.model_dump(mode="json")

    async def compute():
        rows = await view.query(session_factory, filters)
        return {
            "view": view.name,
            "filters": filter_values,
            "rows": rows,
            "last_updated": utcnow().isoformat(),
        }

    return await cache.get_or_compute(cache.key_for(view.name, filter_values), view.ttl, compute)
