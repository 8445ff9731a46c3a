# gamepulse/store.py
"""Event Store and Dedup Ledger access."""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from gamepulse.database import seconds_between, upsert, utcnow
from gamepulse.models import Event, EventStatus, EventType, LedgerEntry, new_event_id

logger = logging.getLogger(__name__)

# --- AGGREGATION SCOPES ---
LEADERBOARD_SCOPE = "leaderboard:global"
KPI_SCOPE = "kpi:daily"


def tournament_scope(tournament_id: str) -> str:
    return f"tournament:{tournament_id}"


def claiming_scopes(event_type: str) -> Tuple[str, ...]:
    """Unscoped domains that must fold an event before it counts as processed."""
    if event_type == EventType.GAME_ENDED.value:
        return (KPI_SCOPE, LEADERBOARD_SCOPE)
    return (KPI_SCOPE,)


# --- INGESTION ---

async def persist_events(session_factory: sessionmaker, events: Sequence[Dict[str, Any]]) -> List[str]:
    """Insert already-shaped events in one transaction, returning their new ids."""
    if not events:
        return []
    now = utcnow()
    rows = []
    for event in events:
        rows.append(Event(
            id=new_event_id(),
            event_type=event["event_type"],
            subject_id=event["subject_id"],
            payload=event.get("payload") or {},
            client_timestamp=event.get("client_timestamp"),
            received_at=now,
            status=EventStatus.PENDING.value,
            processing_attempts=0,
        ))
    async with session_factory() as session:
        async with session.begin():
            session.add_all(rows)
    return [row.id for row in rows]


async def fetch_events(session: AsyncSession, event_ids: Iterable[str]) -> List[Event]:
    ids = list(event_ids)
    if not ids:
        return []
    result = await session.execute(select(Event).where(Event.id.in_(ids)).order_by(Event.received_at))
    return list(result.scalars().all())


# --- DEDUP LEDGER ---

async def claim(session: AsyncSession, scope: str, event_id: str) -> bool:
    """
    Record that `event_id` is being folded into `scope`.

    Must run inside the transaction that applies the event's effect.
    Returns False when the pair already exists: the contribution is already
    reflected in the scope and must be skipped.
    """
    stmt = upsert(session, LedgerEntry).values(
        scope=scope, event_id=event_id, processed_at=utcnow()
    ).on_conflict_do_nothing(index_elements=["scope", "event_id"])
    result = await session.execute(stmt)
    return result.rowcount > 0


def not_folded_into(scope: str):
    """WHERE clause: the event has no ledger entry for `scope`."""
    folded = select(LedgerEntry.event_id).where(
        LedgerEntry.scope == scope, LedgerEntry.event_id == Event.id
    )
    return ~folded.exists()


def folded_count(scopes: Sequence[str]):
    """Correlated count of `scopes` the outer Event already has ledger rows for."""
    return (
        select(func.count())
        .select_from(LedgerEntry)
        .where(LedgerEntry.event_id == Event.id, LedgerEntry.scope.in_(scopes))
        .correlate(Event)
        .scalar_subquery()
    )


async def mark_processed_if_complete(session: AsyncSession, event: Event) -> bool:
    scopes = claiming_scopes(event.event_type)
    stmt = (
        update(Event)
        .where(
            Event.id == event.id,
            Event.status == EventStatus.PENDING.value,
            folded_count(scopes) >= len(scopes),
        )
        .values(status=EventStatus.PROCESSED.value, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


async def finalize_folded(session_factory: sessionmaker) -> int:
    """
    Mark processed every pending event whose claiming scopes are all in the
    ledger.

    Two domains folding the same event concurrently can each commit before
    seeing the other's ledger row; this sweep closes that gap.
    """
    game_ended = EventType.GAME_ENDED.value
    groups = [
        (Event.event_type == game_ended, claiming_scopes(game_ended)),
        (Event.event_type != game_ended, (KPI_SCOPE,)),
    ]
    finalized = 0
    async with session_factory() as session:
        async with session.begin():
            for type_filter, scopes in groups:
                result = await session.execute(
                    update(Event)
                    .where(
                        type_filter,
                        Event.status == EventStatus.PENDING.value,
                        Event.processed_at.is_(None),
                        folded_count(scopes) >= len(scopes),
                    )
                    .values(status=EventStatus.PROCESSED.value, processed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                finalized += result.rowcount
    if finalized:
        logger.info("Finalized %d events folded by every claiming domain", finalized)
    return finalized


async def reset_scope(session: AsyncSession, scope: str, event_types: Optional[Sequence[str]] = None) -> int:
    """
    Drop the ledger rows for `scope` and put the events they covered back
    in the pending pool. Returns the number of events reset.

    Runs inside the caller's transaction, next to the aggregate truncation.
    """
    covered = select(LedgerEntry.event_id).where(LedgerEntry.scope == scope)
    reset = (
        update(Event)
        .where(Event.id.in_(covered), Event.status == EventStatus.PROCESSED.value)
        .values(status=EventStatus.PENDING.value, processed_at=None)
        .execution_options(synchronize_session=False)
    )
    if event_types is not None:
        reset = reset.where(Event.event_type.in_(event_types))
    result = await session.execute(reset)
    await session.execute(delete(LedgerEntry).where(LedgerEntry.scope == scope))
    return result.rowcount


async def record_failure(session_factory: sessionmaker, event_id: str, error: str, max_attempts: int) -> bool:
    """
    Count one failed fold attempt. Returns True if the event is now
    permanently failed.
    """
    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                select(Event.processing_attempts).where(Event.id == event_id).with_for_update()
            )
            attempts = result.scalar_one_or_none()
            if attempts is None:
                return False
            attempts += 1
            values = {"processing_attempts": attempts, "processing_error": error[:1000]}
            exhausted = attempts >= max_attempts
            if exhausted:
                values.update(status=EventStatus.FAILED.value, processed_at=utcnow())
            await session.execute(
                update(Event)
                .where(Event.id == event_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
    return exhausted


# --- OPS ---

async def event_counts(session: AsyncSession, stuck_after: timedelta = timedelta(hours=1)) -> Dict[str, Any]:
    result = await session.execute(select(Event.status, func.count()).group_by(Event.status))
    counts = {status.value: 0 for status in EventStatus}
    for status, count in result.all():
        counts[status] = count

    pending_by_type = await session.execute(
        select(Event.event_type, func.count())
        .where(Event.status == EventStatus.PENDING.value)
        .group_by(Event.event_type)
    )
    ledger_size = await session.execute(select(func.count()).select_from(LedgerEntry))

    now = utcnow()
    # pending implies attempts below the limit: exhausted events are failed
    stuck = await session.execute(
        select(func.count())
        .select_from(Event)
        .where(Event.status == EventStatus.PENDING.value, Event.received_at < now - stuck_after)
    )
    latency = await session.execute(
        select(func.avg(seconds_between(session, Event.received_at, Event.processed_at)))
        .where(
            Event.status == EventStatus.PROCESSED.value,
            Event.received_at >= now - timedelta(hours=24),
        )
    )
    avg_seconds = latency.scalar_one()

    return {
        "unprocessed": counts[EventStatus.PENDING.value],
        "processed": counts[EventStatus.PROCESSED.value],
        "failed": counts[EventStatus.FAILED.value],
        "stuck": stuck.scalar_one(),
        "avg_processing_seconds": round(float(avg_seconds), 3) if avg_seconds is not None else None,
        "pending_by_type": {event_type: count for event_type, count in pending_by_type.all()},
        "ledger_entries": ledger_size.scalar_one(),
    }


async def list_events(
    session: AsyncSession,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 100,
) -> List[Event]:
    query = select(Event)
    if status:
        query = query.where(Event.status == status)
    if event_type:
        query = query.where(Event.event_type == event_type)
    if subject_id:
        query = query.where(Event.subject_id == subject_id)
    result = await session.execute(query.order_by(Event.received_at.desc()).limit(limit))
    return list(result.scalars().all())


async def retry_failed(session_factory: sessionmaker, limit: int = 100) -> int:
    """Put permanently failed events back in the pending pool."""
    async with session_factory() as session:
        async with session.begin():
            ids = (
                select(Event.id)
                .where(Event.status == EventStatus.FAILED.value)
                .order_by(Event.received_at)
                .limit(limit)
            )
            result = await session.execute(
                update(Event)
                .where(Event.id.in_(ids))
                .values(
                    status=EventStatus.PENDING.value,
                    processed_at=None,
                    processing_attempts=0,
                    processing_error=None,
                )
                .execution_options(synchronize_session=False)
            )
    logger.info("Reset %d failed events to pending", result.rowcount)
    return result.rowcount
