# gamepulse/workers/tournament.py
from datetime import timedelta
from typing import Dict

from gamepulse.database import greatest, least, upsert, utcnow
from gamepulse.models import Event, EventType, Tournament, TournamentStanding
from gamepulse.payloads import extract
from gamepulse.store import tournament_scope
from gamepulse.tournaments import active_tournaments
from gamepulse.workers.base import AggregatorWorker


class TournamentAggregator(AggregatorWorker):
    """
    Standings for every active tournament.

    A tournament is a scope of its own: the same game_ended event is folded
    into each tournament whose window contains it, independently of the
    global leaderboard, and the ledger keeps each (tournament, event) pair
    to a single application.
    """

    name = "tournament"
    event_types = (EventType.GAME_ENDED.value,)
    marks_processed = False

    def __init__(self, *args, grace_seconds: int = 600, **kwargs):
        super().__init__(*args, **kwargs)
        self.grace = timedelta(seconds=grace_seconds)
        self._tournaments: Dict[str, Tournament] = {}

    async def scopes(self):
        async with self.session_factory() as session:
            tournaments = await active_tournaments(session, utcnow(), self.grace)
        self._tournaments = {tournament_scope(t.id): t for t in tournaments}
        return list(self._tournaments)

    def scan_query(self, scope):
        tournament = self._tournaments[scope]
        return super().scan_query(scope).where(
            Event.received_at >= tournament.starts_at,
            Event.received_at < tournament.ends_at,
        )

    def views_for(self, scope):
        return ("tournament",)

    async def fold(self, session, event, scope):
        tournament = self._tournaments[scope]
        game = extract(event.event_type, event.payload)
        stmt = upsert(session, TournamentStanding).values(
            tournament_id=tournament.id,
            subject_id=event.subject_id,
            best_score=game.score,
            attempts=1,
            first_attempt_at=event.received_at,
            last_attempt_at=event.received_at,
            updated_at=utcnow(),
        )
        await session.execute(stmt.on_conflict_do_update(
            index_elements=["tournament_id", "subject_id"],
            set_={
                "best_score": greatest(session, TournamentStanding.best_score, stmt.excluded.best_score),
                "attempts": TournamentStanding.attempts + 1,
                "first_attempt_at": least(
                    session, TournamentStanding.first_attempt_at, stmt.excluded.first_attempt_at
                ),
                "last_attempt_at": greatest(
                    session, TournamentStanding.last_attempt_at, stmt.excluded.last_attempt_at
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        ))
