# gamepulse/ingestion.py
import logging
from typing import Any, List, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from gamepulse.handoff import HandoffDispatcher
from gamepulse.schemas import EventSchema, IngestAck
from gamepulse.store import persist_events

logger = logging.getLogger(__name__)


def as_batch(body: Any, max_batch_size: int) -> List[Any]:
    """Single object or array -> list, truncated to the batch ceiling."""
    if body is None:
        return []
    entries = body if isinstance(body, list) else [body]
    if len(entries) > max_batch_size:
        logger.warning("Batch too large: %d events, truncating to %d", len(entries), max_batch_size)
        entries = entries[:max_batch_size]
    return entries


def shape_events(entries: List[Any]) -> Tuple[List[dict], int]:
    """Keep well-shaped entries; returns (events, dropped)."""
    events = []
    dropped = 0
    for index, entry in enumerate(entries):
        try:
            events.append(EventSchema.model_validate(entry).model_dump())
        except ValidationError as e:
            dropped += 1
            logger.warning(
                "Dropping malformed event at index %d: %s",
                index,
                "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()),
            )
    return events, dropped


async def ingest(
    body: Any,
    session_factory: sessionmaker,
    dispatcher: HandoffDispatcher,
    max_batch_size: int,
) -> IngestAck:
    """
    Persist one event or a batch and hand it off for async processing.

    Never raises: the caller always gets an acknowledgment, since a retrying
    client would only create duplicates for aggregation to absorb.
    """
    entries = as_batch(body, max_batch_size)
    ack = IngestAck(count=len(entries))

    try:
        events, dropped = shape_events(entries)
        event_ids = await persist_events(session_factory, events)
        logger.info("Events received: %d stored, %d dropped", len(event_ids), dropped)
    except Exception as e:
        logger.error("Error storing events batch of %d: %s", len(entries), e)
        return ack

    try:
        dispatcher.submit(event_ids)
    except Exception as e:
        logger.error("Error handing off events batch of %d: %s", len(event_ids), e)

    return ack
