# tests/test_workers.py
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import add_event
from gamepulse.database import utcnow
from gamepulse.exceptions import GamePulseError
from gamepulse.models import (
    ActivityDaily,
    Event,
    EventStatus,
    KpiDaily,
    LeaderboardEntry,
    LedgerEntry,
    SubjectCohort,
    TournamentStanding,
)
from gamepulse.store import KPI_SCOPE, LEADERBOARD_SCOPE, event_counts, fetch_events, tournament_scope
from gamepulse.tournaments import create_tournament, teardown_tournament
from gamepulse.workers import BatchResult, KpiAggregator, LeaderboardAggregator, TournamentAggregator


async def get_event(session_factory, event_id):
    async with session_factory() as session:
        return await session.get(Event, event_id)


@pytest.mark.asyncio
async def test_leaderboard_max_merge_and_additive_counters(session_factory):
    for score, duration in [(100, 30), (300, 45), (200, 60)]:
        await add_event(session_factory, "game_ended", "p1", {"score": score, "duration_seconds": duration})

    result = await LeaderboardAggregator(session_factory).run()

    assert result.folded == 3
    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, "p1")
    assert entry.best_score == 300
    assert entry.games_played == 3
    assert entry.total_playtime_seconds == 135


@pytest.mark.asyncio
async def test_lower_score_never_lowers_best(session_factory):
    worker = LeaderboardAggregator(session_factory)
    await add_event(session_factory, "game_ended", "p1", {"score": 900})
    await worker.run()
    await add_event(session_factory, "game_ended", "p1", {"score": 10})
    await worker.run()

    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, "p1")
    assert entry.best_score == 900
    assert entry.games_played == 2


@pytest.mark.asyncio
async def test_rerun_does_not_double_count(session_factory):
    worker = LeaderboardAggregator(session_factory)
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": 50, "duration_seconds": 10})

    first = await worker.run()
    second = await worker.run()

    assert first.folded == 1
    assert second.scanned == 0

    # Folding the same event directly is rejected by the ledger
    async with session_factory() as session:
        [event] = await fetch_events(session, [event_id])
    outcome = await worker.fold_one(event, LEADERBOARD_SCOPE, BatchResult(worker="leaderboard"))
    assert outcome == "skipped"

    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, "p1")
        ledger = await session.execute(select(func.count()).select_from(LedgerEntry))
    assert entry.games_played == 1
    assert entry.total_playtime_seconds == 10
    assert ledger.scalar_one() == 1


@pytest.mark.asyncio
async def test_processed_only_after_every_claiming_domain(session_factory):
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": 10})

    await LeaderboardAggregator(session_factory).run()
    event = await get_event(session_factory, event_id)
    assert event.processed_at is None
    assert event.status == EventStatus.PENDING.value

    await KpiAggregator(session_factory).run()
    event = await get_event(session_factory, event_id)
    assert event.processed_at is not None
    assert event.status == EventStatus.PROCESSED.value


@pytest.mark.asyncio
async def test_non_game_event_processed_by_kpi_alone(session_factory):
    event_id = await add_event(session_factory, "app_launched", "p1", {"platform": "android"})

    await KpiAggregator(session_factory).run()

    event = await get_event(session_factory, event_id)
    assert event.status == EventStatus.PROCESSED.value


@pytest.mark.asyncio
async def test_bad_payload_fails_permanently_after_max_attempts(session_factory):
    worker = LeaderboardAggregator(session_factory, max_attempts=3)
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": -5})

    for expected_attempts in (1, 2):
        result = await worker.run()
        assert result.failed == 1
        event = await get_event(session_factory, event_id)
        assert event.processing_attempts == expected_attempts
        assert event.status == EventStatus.PENDING.value

    result = await worker.run()
    assert result.permanently_failed == 1
    event = await get_event(session_factory, event_id)
    assert event.status == EventStatus.FAILED.value
    assert event.processed_at is not None
    assert "score" in event.processing_error

    # excluded from every later scan, in every domain
    assert (await worker.run()).scanned == 0
    assert (await KpiAggregator(session_factory).run()).scanned == 0


@pytest.mark.asyncio
async def test_failed_fold_leaves_no_ledger_entry(session_factory):
    await add_event(session_factory, "game_ended", "p1", {"score": "lots"})

    await LeaderboardAggregator(session_factory).run()

    async with session_factory() as session:
        ledger = await session.execute(select(func.count()).select_from(LedgerEntry))
        entries = await session.execute(select(func.count()).select_from(LeaderboardEntry))
    assert ledger.scalar_one() == 0
    assert entries.scalar_one() == 0


@pytest.mark.asyncio
async def test_kpi_counters_are_additive(session_factory):
    payloads = [
        ("currency_earned", {"amount": 50, "currency_type": "coins", "platform": "iOS"}),
        ("currency_earned", {"amount": 25, "currency_type": "coins", "platform": "ios"}),
        ("currency_spent", {"amount": 3, "currency_type": "gems", "platform": "ios"}),
        ("purchase_completed", {"price_usd": 4.99, "platform": "ios"}),
        ("game_ended", {"score": 70, "duration_seconds": 120, "platform": "ios"}),
    ]
    for event_type, payload in payloads:
        await add_event(session_factory, event_type, "p1", payload)

    result = await KpiAggregator(session_factory).run()
    assert result.folded == 5

    async with session_factory() as session:
        row = await session.get(KpiDaily, (utcnow().date(), "ios"))
    assert row.events_total == 5
    assert row.active_users == 1
    assert row.coins_earned == 75
    assert row.gems_spent == 3
    assert row.purchases == 1
    assert row.revenue_cents == 499
    assert row.games_played == 1
    assert row.total_score == 70
    assert row.playtime_seconds == 120


@pytest.mark.asyncio
async def test_kpi_cohort_tracks_first_and_last_day(session_factory):
    now = utcnow()
    await add_event(session_factory, "app_launched", "p1", received_at=now - timedelta(days=3))
    await add_event(session_factory, "app_launched", "p1", received_at=now)
    await add_event(session_factory, "app_launched", "p1", received_at=now - timedelta(days=1))

    await KpiAggregator(session_factory).run()

    async with session_factory() as session:
        cohort = await session.get(SubjectCohort, "p1")
    assert cohort.first_seen_day == (now - timedelta(days=3)).date()
    assert cohort.last_seen_day == now.date()


@pytest.mark.asyncio
async def test_tournament_standings_fold_once(session_factory):
    now = utcnow()
    await create_tournament(session_factory, "spring", "Spring Cup", now - timedelta(hours=1), now + timedelta(hours=1))
    for score in (40, 90):
        await add_event(session_factory, "game_ended", "p1", {"score": score})
    # before the window: not part of the tournament
    await add_event(session_factory, "game_ended", "p1", {"score": 5000}, received_at=now - timedelta(hours=2))

    worker = TournamentAggregator(session_factory)
    first = await worker.run()
    second = await worker.run()

    assert first.scopes == [tournament_scope("spring")]
    assert first.folded == 2
    assert second.folded == 0
    async with session_factory() as session:
        standing = await session.get(TournamentStanding, ("spring", "p1"))
    assert standing.best_score == 90
    assert standing.attempts == 2


@pytest.mark.asyncio
async def test_tournament_is_independent_of_global_processing(session_factory):
    now = utcnow()
    await create_tournament(session_factory, "cup", "Cup", now - timedelta(hours=1), now + timedelta(hours=1))
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": 10})

    await LeaderboardAggregator(session_factory).run()
    await KpiAggregator(session_factory).run()
    assert (await get_event(session_factory, event_id)).status == EventStatus.PROCESSED.value

    # already processed globally, still folded into the tournament
    result = await TournamentAggregator(session_factory).run()
    assert result.folded == 1
    event = await get_event(session_factory, event_id)
    assert event.status == EventStatus.PROCESSED.value


@pytest.mark.asyncio
async def test_tournament_teardown_removes_standings_and_ledger(session_factory):
    now = utcnow()
    await create_tournament(session_factory, "cup", "Cup", now - timedelta(hours=1), now + timedelta(hours=1))
    await add_event(session_factory, "game_ended", "p1", {"score": 10})
    await LeaderboardAggregator(session_factory).run()
    await TournamentAggregator(session_factory).run()

    assert await teardown_tournament(session_factory, "cup") is True
    assert await teardown_tournament(session_factory, "cup") is False

    async with session_factory() as session:
        standings = await session.execute(select(func.count()).select_from(TournamentStanding))
        scopes = await session.execute(select(LedgerEntry.scope))
    assert standings.scalar_one() == 0
    assert scopes.scalars().all() == [LEADERBOARD_SCOPE]


@pytest.mark.asyncio
async def test_worker_invalidates_its_views(session_factory, cache):
    key = cache.key_for("leaderboard", {"limit": 15, "offset": 0})
    await cache.get_or_compute(key, 300, _stale)
    await add_event(session_factory, "game_ended", "p1", {"score": 10})

    await LeaderboardAggregator(session_factory, cache=cache).run()

    assert await cache.get_or_compute(key, 300, _fresh) == {"rows": ["fresh"]}


@pytest.mark.asyncio
async def test_kpi_scope_constant_is_used_in_ledger(session_factory):
    await add_event(session_factory, "ad_watched", "p1")
    await KpiAggregator(session_factory).run()
    async with session_factory() as session:
        scopes = await session.execute(select(LedgerEntry.scope))
    assert scopes.scalars().all() == [KPI_SCOPE]


async def _stale():
    return {"rows": ["stale"]}


async def _fresh():
    return {"rows": ["fresh"]}


@pytest.mark.asyncio
@pytest.mark.parametrize("order", [(50, 30), (30, 50)])
async def test_best_score_independent_of_arrival_order(session_factory, order):
    for score in order:
        await add_event(session_factory, "game_ended", "u1", {"score": score})

    await LeaderboardAggregator(session_factory).run()

    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, "u1")
    assert (entry.best_score, entry.games_played) == (50, 2)


@pytest.mark.asyncio
async def test_currency_sums_independent_of_batching(session_factory):
    amounts = [5, 12, 40, 3]
    for amount in amounts:
        await add_event(session_factory, "currency_earned", "p1", {"amount": amount, "currency_type": "gems"})

    worker = KpiAggregator(session_factory, batch_size=1)
    runs = 0
    while (await worker.run()).folded:
        runs += 1

    assert runs == len(amounts)
    async with session_factory() as session:
        row = await session.get(KpiDaily, (utcnow().date(), "unknown"))
    assert row.gems_earned == sum(amounts)
    assert row.events_total == len(amounts)
    assert row.active_users == 1


@pytest.mark.asyncio
async def test_worker_refreshes_overview(session_factory, cache):
    key = cache.key_for("overview", {"days": 7})
    await cache.get_or_compute(key, 300, _stale)
    await add_event(session_factory, "game_ended", "p1", {"score": 10})

    await LeaderboardAggregator(session_factory, cache=cache).run()

    assert await cache.get_or_compute(key, 300, _fresh) == {"rows": ["fresh"]}


# --- cross-domain completion ---

@pytest.mark.asyncio
async def test_event_folded_everywhere_is_finalized_by_next_run(session_factory):
    """Both ledger rows committed without either fold seeing the other's."""
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": 10})
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                LedgerEntry(scope=LEADERBOARD_SCOPE, event_id=event_id, processed_at=utcnow()),
                LedgerEntry(scope=KPI_SCOPE, event_id=event_id, processed_at=utcnow()),
            ])

    result = await LeaderboardAggregator(session_factory).run()

    assert result.scanned == 0
    assert result.finalized == 1
    event = await get_event(session_factory, event_id)
    assert event.status == EventStatus.PROCESSED.value
    assert event.processed_at is not None


@pytest.mark.asyncio
async def test_partially_folded_event_is_not_finalized(session_factory):
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": 10})
    async with session_factory() as session:
        async with session.begin():
            session.add(LedgerEntry(scope=KPI_SCOPE, event_id=event_id, processed_at=utcnow()))

    result = await TournamentAggregator(session_factory).run()
    assert result.finalized == 0
    assert (await KpiAggregator(session_factory).run()).finalized == 0

    assert (await get_event(session_factory, event_id)).status == EventStatus.PENDING.value


# --- concurrency ---

@pytest.mark.asyncio
async def test_overlapping_runs_fold_each_event_once(session_factory):
    await add_event(session_factory, "game_ended", "p1", {"score": 70, "duration_seconds": 30})
    worker = LeaderboardAggregator(session_factory)

    first, second = await asyncio.gather(worker.run(), worker.run())

    assert first.folded + second.folded == 1
    assert first.failed == second.failed == 0
    async with session_factory() as session:
        entry = await session.get(LeaderboardEntry, "p1")
        ledger = await session.execute(select(func.count()).select_from(LedgerEntry))
    assert (entry.games_played, entry.total_playtime_seconds) == (1, 30)
    assert ledger.scalar_one() == 1


@pytest.mark.asyncio
async def test_concurrent_domains_complete_the_event(session_factory):
    event_ids = [
        await add_event(session_factory, "game_ended", f"p{i}", {"score": i}) for i in range(5)
    ]

    await asyncio.gather(
        LeaderboardAggregator(session_factory).run(),
        KpiAggregator(session_factory).run(),
    )

    for event_id in event_ids:
        event = await get_event(session_factory, event_id)
        assert event.status == EventStatus.PROCESSED.value
        assert event.processed_at is not None


# --- rebuild ---

async def snapshot(session_factory, model):
    columns = [c for c in model.__table__.columns if c.name != "updated_at"]
    async with session_factory() as session:
        result = await session.execute(select(*columns).order_by(*model.__table__.primary_key.columns))
    return [tuple(row) for row in result.all()]


@pytest.mark.asyncio
async def test_rebuild_reproduces_incremental_aggregates(session_factory):
    now = utcnow()
    for i, score in enumerate([40, 90, 15, 60, 90]):
        await add_event(
            session_factory, "game_ended", f"p{i % 2}", {"score": score, "duration_seconds": 10 + i},
            received_at=now - timedelta(days=i),
        )
    await add_event(session_factory, "currency_earned", "p1", {"amount": 5, "currency_type": "coins"})
    await add_event(session_factory, "app_launched", "p2", received_at=now - timedelta(days=2))

    leaderboard = LeaderboardAggregator(session_factory, batch_size=2)
    kpi = KpiAggregator(session_factory, batch_size=2)
    for worker in (leaderboard, kpi):
        while (await worker.run()).scanned:
            pass
    models = (LeaderboardEntry, KpiDaily, ActivityDaily, SubjectCohort)
    before = {model: await snapshot(session_factory, model) for model in models}
    assert before[LeaderboardEntry]

    rebuilt = await leaderboard.rebuild()
    assert rebuilt.folded == 5
    assert (await kpi.rebuild()).folded == 7

    for model in models:
        assert await snapshot(session_factory, model) == before[model]
    async with session_factory() as session:
        statuses = await session.execute(select(Event.status).distinct())
        ledger = await session.execute(select(func.count()).select_from(LedgerEntry))
    assert statuses.scalars().all() == [EventStatus.PROCESSED.value]
    assert ledger.scalar_one() == 12


@pytest.mark.asyncio
async def test_rebuild_leaves_failed_events_alone(session_factory):
    event_id = await add_event(session_factory, "game_ended", "p1", {"score": -1})
    worker = LeaderboardAggregator(session_factory, max_attempts=1)
    await worker.run()

    result = await worker.rebuild()

    assert result.scanned == 0
    assert (await get_event(session_factory, event_id)).status == EventStatus.FAILED.value


@pytest.mark.asyncio
async def test_tournament_standings_cannot_be_rebuilt(session_factory):
    with pytest.raises(GamePulseError):
        await TournamentAggregator(session_factory).rebuild()


# --- stats ---

@pytest.mark.asyncio
async def test_counts_report_stuck_events_and_latency(session_factory):
    now = utcnow()
    await add_event(session_factory, "app_launched", "old", received_at=now - timedelta(hours=2))
    async with session_factory() as session:
        counts = await event_counts(session)
    assert counts["stuck"] == 1
    assert counts["avg_processing_seconds"] is None

    await add_event(session_factory, "app_launched", "recent", received_at=now - timedelta(seconds=30))
    await KpiAggregator(session_factory).run()

    async with session_factory() as session:
        counts = await event_counts(session)
    assert counts["stuck"] == 0
    # mean of roughly two hours and thirty seconds
    assert 3600 <= counts["avg_processing_seconds"] <= 2 * 3600
