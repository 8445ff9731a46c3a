# gamepulse/workers/leaderboard.py
from gamepulse.database import greatest, upsert, utcnow
from gamepulse.models import EventType, LeaderboardEntry
from gamepulse.payloads import extract
from gamepulse.store import LEADERBOARD_SCOPE
from gamepulse.workers.base import AggregatorWorker


class LeaderboardAggregator(AggregatorWorker):
    """Global leaderboard: best score (max-merge), games and playtime (additive)."""

    name = "leaderboard"
    event_types = (EventType.GAME_ENDED.value,)
    cache_views = ("leaderboard", "player", "overview")
    aggregate_models = (LeaderboardEntry,)

    async def scopes(self):
        return [LEADERBOARD_SCOPE]

    async def fold(self, session, event, scope):
        game = extract(event.event_type, event.payload)
        stmt = upsert(session, LeaderboardEntry).values(
            subject_id=event.subject_id,
            best_score=game.score,
            games_played=1,
            total_playtime_seconds=game.duration_seconds,
            last_played_at=event.received_at,
            updated_at=utcnow(),
        )
        await session.execute(stmt.on_conflict_do_update(
            index_elements=["subject_id"],
            set_={
                "best_score": greatest(session, LeaderboardEntry.best_score, stmt.excluded.best_score),
                "games_played": LeaderboardEntry.games_played + 1,
                "total_playtime_seconds": (
                    LeaderboardEntry.total_playtime_seconds + stmt.excluded.total_playtime_seconds
                ),
                "last_played_at": greatest(session, LeaderboardEntry.last_played_at, stmt.excluded.last_played_at),
                "updated_at": stmt.excluded.updated_at,
            },
        ))
