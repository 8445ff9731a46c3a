# gamepulse/workers/kpi.py
from typing import Dict

from gamepulse.database import greatest, least, upsert, utcnow
from gamepulse.models import ActivityDaily, EventType, KPI_COUNTERS, KpiDaily, SubjectCohort
from gamepulse.payloads import extract, platform_of
from gamepulse.store import KPI_SCOPE
from gamepulse.workers.base import AggregatorWorker

COUNTED_ONCE = {
    EventType.APP_INSTALLED.value: "installs",
    EventType.LEVEL_COMPLETED.value: "levels_completed",
    EventType.AD_WATCHED.value: "ads_watched",
}


def kpi_contribution(event_type: str, payload) -> Dict[str, int]:
    """Additive counter increments for one event. Raises PayloadError on bad payloads."""
    counters = {"events_total": 1}

    if event_type in COUNTED_ONCE:
        counters[COUNTED_ONCE[event_type]] = 1

    elif event_type == EventType.GAME_ENDED.value:
        game = extract(event_type, payload)
        counters.update(games_played=1, total_score=game.score, playtime_seconds=game.duration_seconds)

    elif event_type == EventType.CURRENCY_EARNED.value:
        earned = extract(event_type, payload)
        counters[f"{earned.currency_type}_earned"] = earned.amount

    elif event_type == EventType.CURRENCY_SPENT.value:
        spent = extract(event_type, payload)
        counters[f"{spent.currency_type}_spent"] = spent.amount

    elif event_type == EventType.PURCHASE_COMPLETED.value:
        purchase = extract(event_type, payload)
        counters.update(purchases=1, revenue_cents=int(round(purchase.price_usd * 100)))

    return counters


class KpiAggregator(AggregatorWorker):
    """
    Daily KPI rollups per platform, plus the activity and cohort tables the
    retention view is built from. Claims every event type.
    """

    name = "kpi"
    event_types = None
    cache_views = ("kpi-daily", "overview", "retention")
    aggregate_models = (KpiDaily, ActivityDaily, SubjectCohort)

    async def scopes(self):
        return [KPI_SCOPE]

    async def fold(self, session, event, scope):
        counters = kpi_contribution(event.event_type, event.payload)
        day = event.received_at.date()
        platform = platform_of(event.payload)

        # First activity row for (day, platform, subject) is what makes it a distinct active user
        activity = upsert(session, ActivityDaily).values(
            day=day, platform=platform, subject_id=event.subject_id
        ).on_conflict_do_nothing(index_elements=["day", "platform", "subject_id"])
        if (await session.execute(activity)).rowcount > 0:
            counters["active_users"] = 1

        row = {name: counters.get(name, 0) for name in KPI_COUNTERS}
        stmt = upsert(session, KpiDaily).values(day=day, platform=platform, updated_at=utcnow(), **row)
        set_ = {name: getattr(KpiDaily, name) + getattr(stmt.excluded, name) for name in KPI_COUNTERS}
        set_["updated_at"] = stmt.excluded.updated_at
        await session.execute(stmt.on_conflict_do_update(index_elements=["day", "platform"], set_=set_))

        cohort = upsert(session, SubjectCohort).values(
            subject_id=event.subject_id, first_seen_day=day, last_seen_day=day
        )
        await session.execute(cohort.on_conflict_do_update(
            index_elements=["subject_id"],
            set_={
                "first_seen_day": least(session, SubjectCohort.first_seen_day, cohort.excluded.first_seen_day),
                "last_seen_day": greatest(session, SubjectCohort.last_seen_day, cohort.excluded.last_seen_day),
            },
        ))
