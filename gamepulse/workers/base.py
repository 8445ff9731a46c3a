# gamepulse/workers/base.py
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from gamepulse.cache import CacheAside
from gamepulse.exceptions import GamePulseError, PayloadError
from gamepulse.models import Event, EventStatus
from gamepulse.store import (
    claim,
    finalize_folded,
    mark_processed_if_complete,
    not_folded_into,
    record_failure,
    reset_scope,
)

logger = logging.getLogger(__name__)

FOLDED = "folded"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class BatchResult:
    worker: str
    scopes: List[str] = field(default_factory=list)
    scanned: int = 0
    folded: int = 0
    skipped: int = 0
    failed: int = 0
    permanently_failed: int = 0
    finalized: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AggregatorWorker:
    """
    Folds unprocessed events into one aggregation domain.

    Each event is folded in its own transaction, together with its ledger
    entry for the scope, so a re-run or an overlapping batch can never apply
    the same event twice. Subclasses provide the type filter, the fold itself
    and the cache views to invalidate.
    """

    name = "aggregator"
    event_types: Optional[Tuple[str, ...]] = None
    # Unscoped domains also drive Event.processed_at
    marks_processed = True
    cache_views: Tuple[str, ...] = ()
    # Tables truncated by rebuild()
    aggregate_models: Tuple[type, ...] = ()

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: Optional[CacheAside] = None,
        batch_size: int = 1000,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.runs = 0
        self.last_result: Optional[BatchResult] = None

    # --- hooks ---

    async def scopes(self) -> Sequence[str]:
        raise NotImplementedError

    async def fold(self, session: AsyncSession, event: Event, scope: str) -> None:
        raise NotImplementedError

    def scan_query(self, scope: str):
        query = select(Event).where(
            Event.status != EventStatus.FAILED.value,
            not_folded_into(scope),
        )
        if self.marks_processed:
            query = query.where(Event.processed_at.is_(None))
        if self.event_types is not None:
            query = query.where(Event.event_type.in_(self.event_types))
        return query.order_by(Event.received_at, Event.id).limit(self.batch_size)

    def views_for(self, scope: str) -> Tuple[str, ...]:
        return self.cache_views

    # --- run ---

    async def run(self) -> BatchResult:
        started = time.monotonic()
        result = BatchResult(worker=self.name)

        for scope in await self.scopes():
            result.scopes.append(scope)
            async with self.session_factory() as session:
                events = (await session.execute(self.scan_query(scope))).scalars().all()
            result.scanned += len(events)

            folded_before = result.folded
            for event in events:
                outcome = await self.fold_one(event, scope, result)
                if outcome == FOLDED:
                    result.folded += 1
                elif outcome == SKIPPED:
                    result.skipped += 1
                else:
                    result.failed += 1

            if result.folded > folded_before and self.cache is not None:
                await self.cache.invalidate(*self.views_for(scope))

        if self.marks_processed:
            result.finalized = await finalize_folded(self.session_factory)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.runs += 1
        self.last_result = result
        if result.scanned:
            logger.info(
                "%s: scanned=%d folded=%d skipped=%d failed=%d in %dms",
                self.name, result.scanned, result.folded, result.skipped, result.failed, result.duration_ms,
            )
        return result

    async def rebuild(self) -> BatchResult:
        """
        Truncate this domain's aggregates and fold every event again.

        The truncation, the ledger reset and the reset of the events back to
        pending commit together, so a failed rebuild leaves the old state.
        """
        if not self.marks_processed or not self.aggregate_models:
            raise GamePulseError(f"{self.name} aggregates cannot be rebuilt")

        started = time.monotonic()
        async with self.session_factory() as session:
            async with session.begin():
                for model in self.aggregate_models:
                    await session.execute(delete(model))
                reset = 0
                for scope in await self.scopes():
                    reset += await reset_scope(session, scope, self.event_types)
        logger.warning("%s: rebuilding aggregates, %d events reset to pending", self.name, reset)

        total = BatchResult(worker=self.name)
        while True:
            result = await self.run()
            total.scopes = result.scopes
            for counter in ("scanned", "folded", "skipped", "failed", "permanently_failed", "finalized"):
                setattr(total, counter, getattr(total, counter) + getattr(result, counter))
            if result.scanned < self.batch_size:
                break
        if self.cache is not None:
            await self.cache.invalidate(*self.cache_views)

        total.duration_ms = int((time.monotonic() - started) * 1000)
        logger.warning("%s: rebuild folded %d events in %dms", self.name, total.folded, total.duration_ms)
        return total

    async def fold_one(self, event: Event, scope: str, result: BatchResult) -> str:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    # serializes domains folding the same event; no-op on SQLite
                    await session.execute(select(Event.id).where(Event.id == event.id).with_for_update())
                    if not await claim(session, scope, event.id):
                        return SKIPPED
                    await self.fold(session, event, scope)
                    if self.marks_processed:
                        await mark_processed_if_complete(session, event)
            return FOLDED
        except PayloadError as e:
            logger.warning("%s: bad payload for event %s: %s", self.name, event.id, e)
            error = str(e)
        except Exception as e:
            logger.exception("%s: error folding event %s into %s", self.name, event.id, scope)
            error = f"{type(e).__name__}: {e}"

        if await record_failure(self.session_factory, event.id, f"[{scope}] {error}", self.max_attempts):
            result.permanently_failed += 1
            logger.error(
                "%s: event %s permanently failed after %d attempts", self.name, event.id, self.max_attempts
            )
        return FAILED
