"""Event lifecycle maintenance."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, select

from .database import get_session
from .models import Event
from .utils import utcnow

# Use uvicorn's error logger so job messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

COMPLETE_BATCH_SIZE = 200


def complete_finished_events(*, now: datetime | None = None) -> dict:
    """Mark published events whose end time has passed as completed.

    Completed events stop accepting registrations. Events without an end time
    are left alone; their organizer closes them explicitly.
    """
    stats = {"events_completed": 0, "batches": 0}
    now = now or utcnow()
    finished_filter = and_(
        Event.status == "published",
        Event.end_time.is_not(None),
        Event.end_time <= now,
    )
    while True:
        with get_session() as session:
            batch = session.scalars(
                select(Event)
                .where(finished_filter)
                .order_by(Event.end_time, Event.id)
                .limit(COMPLETE_BATCH_SIZE)
            ).all()
            for event in batch:
                event.status = "completed"
                event.last_modified = now
                session.add(event)
                logger.debug("Completed event %s (%s)", event.id, event.title)
            stats["events_completed"] += len(batch)
        if not batch:
            break
        stats["batches"] += 1
        if len(batch) < COMPLETE_BATCH_SIZE:
            break

    logger.info(
        "Auto-complete finished: %d events completed across %d batches",
        stats["events_completed"],
        stats["batches"],
    )
    return stats
