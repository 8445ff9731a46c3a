from gamepulse.workers.base import AggregatorWorker, BatchResult
from gamepulse.workers.kpi import KpiAggregator
from gamepulse.workers.leaderboard import LeaderboardAggregator
from gamepulse.workers.tournament import TournamentAggregator

__all__ = [
    "AggregatorWorker",
    "BatchResult",
    "KpiAggregator",
    "LeaderboardAggregator",
    "TournamentAggregator",
]
