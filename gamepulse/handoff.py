# gamepulse/handoff.py
"""
Asynchronous hand-off of persisted events.

The ingestion request returns as soon as its events are stored. The ids are
then handed to the post-ingest processor, either through a Redis list (when a
queue is configured) or through a supervised in-process task.
"""
import asyncio
import json
import logging
from typing import List, Optional, Sequence, Set

import redis.asyncio as redis
from sqlalchemy.orm import sessionmaker

from gamepulse.database import greatest, least, upsert
from gamepulse.models import Event, EventType, Player
from gamepulse.payloads import platform_of
from gamepulse.store import fetch_events

logger = logging.getLogger(__name__)

NICKNAME_FIELDS = ("new_nickname", "nickname")


def _nickname(event: Event) -> Optional[str]:
    payload = event.payload if isinstance(event.payload, dict) else {}
    keys = NICKNAME_FIELDS if event.event_type == EventType.NICKNAME_CHANGED.value else ("nickname",)
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()[:50]
    return None


class PostIngestProcessor:
    """Keeps the `players` profile table in step with the events received."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def process(self, event_ids: Sequence[str]) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                events = await fetch_events(session, event_ids)
                for event in events:
                    await self._touch_player(session, event)
        return len(events)

    async def _touch_player(self, session, event: Event) -> None:
        platform = platform_of(event.payload)
        values = {
            "subject_id": event.subject_id,
            "nickname": _nickname(event),
            "platform": None if platform == "unknown" else platform,
            "first_seen_at": event.received_at,
            "last_seen_at": event.received_at,
        }
        stmt = upsert(session, Player).values(**values)
        updates = {
            "first_seen_at": least(session, Player.first_seen_at, stmt.excluded.first_seen_at),
            "last_seen_at": greatest(session, Player.last_seen_at, stmt.excluded.last_seen_at),
        }
        if values["nickname"] is not None:
            updates["nickname"] = stmt.excluded.nickname
        if values["platform"] is not None:
            updates["platform"] = stmt.excluded.platform
        await session.execute(stmt.on_conflict_do_update(index_elements=["subject_id"], set_=updates))


class RedisEventQueue:
    """Redis list carrying batches of persisted event ids (RPUSH / BLPOP)."""

    def __init__(self, client, queue_name: str = "event_queue"):
        self.client = client
        self.queue_name = queue_name
        self.stats = {"pushed": 0, "consumed": 0, "errors": 0}

    @classmethod
    def from_url(cls, url: str, queue_name: str = "event_queue") -> "RedisEventQueue":
        return cls(redis.from_url(url, decode_responses=True), queue_name)

    async def push(self, event_ids: Sequence[str]) -> None:
        await self.client.rpush(self.queue_name, json.dumps({"event_ids": list(event_ids)}))
        self.stats["pushed"] += 1

    async def consume(self, processor: PostIngestProcessor, timeout: int = 5) -> None:
        """Loop taking batches off the queue until cancelled."""
        logger.info("Queue consumer started on %s", self.queue_name)
        while True:
            try:
                # BLPOP blocks until data arrives, no busy wait
                item = await self.client.blpop(self.queue_name, timeout=timeout)
                if item:
                    message = json.loads(item[1])
                    await processor.process(message.get("event_ids", []))
                    self.stats["consumed"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["errors"] += 1
                logger.error("Queue consumer error: %s", e)
                await asyncio.sleep(1)  # back off while Redis or the database is down

    async def depth(self) -> int:
        return await self.client.llen(self.queue_name)

    async def close(self) -> None:
        await self.client.aclose()


class HandoffDispatcher:
    """
    Fire-and-forget submission with a supervised error channel.

    Every submission becomes a tracked task; its outcome is logged and counted
    by a done-callback, and `drain()` waits for whatever is still running.
    """

    def __init__(self, processor: PostIngestProcessor, queue: Optional[RedisEventQueue] = None):
        self.processor = processor
        self.queue = queue
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {"submitted": 0, "queued": 0, "processed_inline": 0, "failed": 0}

    def submit(self, event_ids: Sequence[str]) -> Optional[asyncio.Task]:
        if not event_ids:
            return None
        task = asyncio.create_task(self._hand_off(list(event_ids)))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        self.stats["submitted"] += 1
        return task

    async def _hand_off(self, event_ids: List[str]) -> None:
        if self.queue is not None:
            try:
                await self.queue.push(event_ids)
                self.stats["queued"] += 1
                return
            except Exception as e:
                logger.warning("Queue push failed (%s), processing %d events inline", e, len(event_ids))
        await self.processor.process(event_ids)
        self.stats["processed_inline"] += 1

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.stats["failed"] += 1
            logger.error("Event hand-off failed: %r", error)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
