"""CRUD helpers for profiles and events."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ExhaustionError, NotFoundError
from .identifiers import event_id_exists, issue_event_id
from .models import EVENT_STATUSES, Event, Profile
from .roles import normalize_role
from .utils import normalize_email, to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

PROFILE_FIELDS = ("full_name", "phone", "institution", "position", "city")


def _now() -> datetime:
    return utcnow()


def _normalize_capacity(raw: int | None) -> int | None:
    if raw is None:
        return None
    value = int(raw)
    if value <= 0:
        raise ValueError("Capacity must be a positive integer")
    return value


def get_profile(session: Session, profile_id: str) -> Profile:
    profile = session.get(Profile, profile_id)
    if not profile:
        raise NotFoundError("User not found")
    return profile


def get_profile_by_email(session: Session, email: str) -> Profile | None:
    stmt = select(Profile).where(Profile.email == normalize_email(email))
    return session.scalars(stmt).first()


def get_profile_by_token(session: Session, token: str | None) -> Profile | None:
    if not token:
        return None
    stmt = select(Profile).where(Profile.api_token == token)
    return session.scalars(stmt).first()


def create_profile(
    session: Session,
    *,
    email: str,
    role: str = "participant",
    **fields: Any,
) -> Profile:
    """Create and persist a new profile with a fresh API token."""
    unknown = set(fields) - set(PROFILE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
    profile = Profile(
        email=normalize_email(email),
        api_token=secrets.token_urlsafe(32),
        role=normalize_role(role),
        created_at=_now(),
        **fields,
    )
    session.add(profile)
    session.flush()
    return profile


def update_profile(session: Session, profile: Profile, **fields: Any) -> Profile:
    """Update the free-form profile fields; role is changed through ``roles``."""
    for key, value in fields.items():
        if key not in PROFILE_FIELDS:
            raise ValueError(f"Unknown profile field {key!r}")
        setattr(profile, key, value)
    session.add(profile)
    session.flush()
    return profile


def get_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, (event_id or "").strip().upper())
    if not event:
        raise NotFoundError("Event not found")
    return event


def create_event(
    session: Session,
    *,
    organizer: Profile,
    title: str,
    start_time: datetime,
    end_time: datetime | None = None,
    description: str | None = None,
    location: str | None = None,
    capacity: int | None = None,
    status: str = "draft",
) -> Event:
    """Create and persist a new event under a freshly issued identifier.

    The insert runs inside a SAVEPOINT; losing the primary key race against a
    concurrent insert discards the candidate and issues a new one.
    """
    if status not in EVENT_STATUSES:
        raise ValueError(f"Invalid event status {status!r}")
    normalized_capacity = _normalize_capacity(capacity)
    attempts = settings.event_insert_max_attempts
    for attempt in range(1, attempts + 1):
        event_id = issue_event_id(session)
        event = Event(
            id=event_id,
            organizer_id=organizer.id,
            title=title,
            description=description,
            location=location,
            start_time=to_naive_utc(start_time),
            end_time=to_naive_utc(end_time),
            capacity=normalized_capacity,
            status=status,
            created_at=_now(),
            last_modified=_now(),
        )
        try:
            with session.begin_nested():
                session.add(event)
        except IntegrityError:
            if not event_id_exists(session, event_id):
                raise
            logger.warning(
                "Event id %s was claimed concurrently (attempt %d of %d)",
                event_id,
                attempt,
                attempts,
            )
            continue
        logger.info("Created event %s (%s)", event.id, event.title)
        return event
    raise ExhaustionError(attempts)


def update_event(
    session: Session,
    event: Event,
    *,
    title: str,
    start_time: datetime,
    end_time: datetime | None = None,
    description: str | None = None,
    location: str | None = None,
    capacity: int | None = None,
) -> Event:
    """Update an existing event's descriptive fields."""
    event.title = title
    event.description = description
    event.location = location
    event.start_time = to_naive_utc(start_time)
    event.end_time = to_naive_utc(end_time)
    event.capacity = _normalize_capacity(capacity)
    event.last_modified = _now()
    session.add(event)
    session.flush()
    return event


def set_event_status(session: Session, event: Event, status: str) -> Event:
    normalized = (status or "").strip().lower()
    if normalized not in EVENT_STATUSES:
        raise ValueError(f"Invalid event status {status!r}")
    if event.status != normalized:
        logger.info("Event %s status %s -> %s", event.id, event.status, normalized)
    event.status = normalized
    event.last_modified = _now()
    session.add(event)
    session.flush()
    return event


def can_manage_event(profile: Profile | None, event: Event) -> bool:
    if profile is None:
        return False
    return profile.is_admin or event.organizer_id == profile.id
