"""Short, shareable event identifiers.

Identifiers are drawn uniformly from an alphabet without look-alike glyphs
and probed against ``events.id``. The probe is read-only: an identifier is
only provisional until the owning insert commits, and a caller whose insert
hits the primary key must ask for a new one rather than retry the candidate.
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ExhaustionError
from .models import Event

logger = logging.getLogger("uvicorn.error")


def generate_event_id(
    length: int | None = None, alphabet: str | None = None
) -> str:
    length = length or settings.event_id_length
    alphabet = alphabet or settings.event_id_alphabet
    return "".join(secrets.choice(alphabet) for _ in range(length))


def is_valid_event_id(value: str | None) -> bool:
    if not value or len(value) != settings.event_id_length:
        return False
    return all(char in settings.event_id_alphabet for char in value)


def event_id_exists(session: Session, candidate: str) -> bool:
    stmt = select(Event.id).where(Event.id == candidate).limit(1)
    return session.scalar(stmt) is not None


def issue_event_id(session: Session, *, max_attempts: int | None = None) -> str:
    """Return an identifier not currently used by any event.

    Raises :class:`ExhaustionError` after ``max_attempts`` collisions.
    """
    attempts = max_attempts or settings.event_id_max_attempts
    for attempt in range(1, attempts + 1):
        candidate = generate_event_id()
        if not event_id_exists(session, candidate):
            return candidate
        logger.debug("Event id %s already taken (attempt %d)", candidate, attempt)
    logger.error("Event id space probe exhausted after %d attempts", attempts)
    raise ExhaustionError(attempts)
