"""Registration admission control.

One registration row exists per (event, user) pair, ever. Its status moves
through a small state machine::

    (no row)   --admit-->        registered
    registered --mark-->         attended
    registered --cancel-->       cancelled
    attended   --cancel-->       cancelled
    cancelled  --admit-->        registered   (same row, payload replaced)

Rows with status ``registered`` or ``attended`` are *active* and count
against the event's capacity. ``admit`` performs every check and the write in
a single transaction that first locks the event row (``SELECT ... FOR
UPDATE``; SQLite connections open with ``BEGIN IMMEDIATE`` instead), so two
admissions for the same event cannot both read the last free slot. The
``(event_id, user_id)`` unique constraint backs the duplicate check at the
store level; losing that race is retried and reported as a duplicate.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .config import settings
from .crud import can_manage_event
from .database import get_session
from .errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    IncompleteProfileError,
    InvalidTransitionError,
    NotFoundError,
    NotOpenError,
    PermissionDeniedError,
    StoreBusyError,
)
from .models import (
    ACTIVE_REGISTRATION_STATUSES,
    REGISTRATION_STATUSES,
    Event,
    Profile,
    Registration,
)
from .notifications import Notifier, default_notifier
from .utils import is_blank, utcnow

logger = logging.getLogger("uvicorn.error")

ALLOWED_TRANSITIONS = {
    ("registered", "attended"),
    ("registered", "cancelled"),
    ("attended", "cancelled"),
}

RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
RETRYABLE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "could not serialize",
    "deadlock detected",
)
DUPLICATE_REGISTRATION_MARKERS = (
    "uq_registrations_event_user",
    "registrations.event_id, registrations.user_id",
)


def _normalize_event_id(event_id: str) -> str:
    return (event_id or "").strip().upper()


def is_retryable_store_error(exc: OperationalError) -> bool:
    """Lock timeouts, serialization failures and deadlocks are worth a retry."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in RETRYABLE_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGES)


def is_duplicate_registration(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    message = str(orig if orig is not None else exc)
    return any(marker in message for marker in DUPLICATE_REGISTRATION_MARKERS)


def missing_profile_fields(profile: Profile) -> list[str]:
    return [
        field
        for field in settings.required_profile_fields
        if is_blank(getattr(profile, field, None))
    ]


def active_count(session: Session, event_id: str) -> int:
    stmt = select(func.count(Registration.id)).where(
        Registration.event_id == event_id,
        Registration.status.in_(ACTIVE_REGISTRATION_STATUSES),
    )
    return session.scalar(stmt) or 0


def find_registration(
    session: Session, event_id: str, user_id: str
) -> Registration | None:
    stmt = select(Registration).where(
        Registration.event_id == _normalize_event_id(event_id),
        Registration.user_id == user_id,
    )
    return session.scalars(stmt).first()


def get_registration(
    session: Session, registration_id: str, *, for_update: bool = False
) -> Registration:
    stmt = select(Registration).where(Registration.id == registration_id)
    if for_update:
        stmt = stmt.with_for_update()
    registration = session.scalars(stmt).first()
    if not registration:
        raise NotFoundError("Registration not found")
    return registration


def _lock_event(session: Session, event_id: str) -> Event:
    stmt = select(Event).where(Event.id == event_id).with_for_update()
    event = session.scalars(stmt).first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def admit_in_session(
    session: Session,
    *,
    event_id: str,
    user_id: str,
    payload: Any = None,
) -> tuple[Registration, bool]:
    """Run the admission checks and write inside the caller's transaction.

    Returns the registration and whether it was a reactivation of a
    cancelled row. The caller owns commit and rollback.
    """
    event = _lock_event(session, _normalize_event_id(event_id))
    if not event.is_open:
        raise NotOpenError(event.status)

    profile = session.get(Profile, user_id)
    if not profile:
        raise NotFoundError("User not found")
    missing = missing_profile_fields(profile)
    if missing:
        raise IncompleteProfileError(missing)

    existing = find_registration(session, event.id, user_id)
    if existing is not None and existing.is_active:
        raise AlreadyRegisteredError(existing.status)

    # The pair's own cancelled row is not active, so it never counts here.
    if event.capacity is not None and active_count(session, event.id) >= event.capacity:
        raise CapacityExceededError(event.capacity)

    now = utcnow()
    if existing is None:
        registration = Registration(
            event_id=event.id,
            user_id=user_id,
            payload=payload,
            status="registered",
            registered_at=now,
            last_modified=now,
        )
        session.add(registration)
        session.flush()
        return registration, False

    result = session.execute(
        update(Registration)
        .where(Registration.id == existing.id, Registration.status == "cancelled")
        .values(
            status="registered",
            payload=payload,
            registered_at=now,
            last_modified=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.refresh(existing)
    if result.rowcount != 1:
        raise AlreadyRegisteredError(existing.status)
    return existing, True


def _admission_message(title: str, reactivated: bool) -> str:
    if reactivated:
        return f"Your registration for {title} is active again."
    return f"You are registered for {title}."


def admit(
    event_id: str,
    user_id: str,
    payload: Any = None,
    *,
    notifier: Notifier | None = None,
) -> Registration:
    """Admit ``user_id`` to ``event_id`` or raise an :class:`AdmissionError`.

    Each attempt is its own unit of work. Lock timeouts and serialization
    failures are retried up to ``admission_max_attempts`` times before
    surfacing as :class:`StoreBusyError`; a lost uniqueness race is retried so
    the next attempt observes the winning row.
    """
    attempts = settings.admission_max_attempts
    failure: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            with get_session() as session:
                registration, reactivated = admit_in_session(
                    session, event_id=event_id, user_id=user_id, payload=payload
                )
                event_title = registration.event.title
        except IntegrityError as exc:
            if not is_duplicate_registration(exc):
                raise
            logger.info(
                "Concurrent registration for event %s user %s (attempt %d of %d)",
                event_id,
                user_id,
                attempt,
                attempts,
            )
            failure = AlreadyRegisteredError()
            continue
        except OperationalError as exc:
            if not is_retryable_store_error(exc):
                raise
            logger.warning(
                "Store busy while admitting user %s to event %s (attempt %d of %d)",
                user_id,
                event_id,
                attempt,
                attempts,
            )
            failure = StoreBusyError()
            continue
        break
    else:
        raise failure

    logger.info(
        "%s registration %s for event %s user %s",
        "Reactivated" if reactivated else "Admitted",
        registration.id,
        registration.event_id,
        user_id,
    )
    (notifier or default_notifier()).notify(
        user_id,
        "registration",
        {
            "event_id": registration.event_id,
            "registration_id": registration.id,
            "title": f"Registration confirmed: {event_title}",
            "message": _admission_message(event_title, reactivated),
        },
    )
    return registration


def apply_transition(registration: Registration, new_status: str) -> bool:
    """Move ``registration`` to ``new_status``; return whether anything changed."""
    target = (new_status or "").strip().lower()
    current = registration.status
    if target == "cancelled" and current == "cancelled":
        return False
    if target not in REGISTRATION_STATUSES or (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(current, target or str(new_status))
    registration.status = target
    registration.last_modified = utcnow()
    return True


def _require_event_manager(
    session: Session, registration: Registration, acting_user_id: str
) -> None:
    actor = session.get(Profile, acting_user_id)
    event = session.get(Event, registration.event_id)
    if not can_manage_event(actor, event):
        raise PermissionDeniedError(
            "Only the event organizer can change registration status"
        )


def set_status(
    registration_id: str,
    new_status: str,
    *,
    acting_user_id: str | None = None,
) -> Registration:
    """Organizer status change; no capacity guard since it never adds actives."""
    with get_session() as session:
        registration = get_registration(session, registration_id, for_update=True)
        if acting_user_id is not None:
            _require_event_manager(session, registration, acting_user_id)
        previous = registration.status
        changed = apply_transition(registration, new_status)
        session.add(registration)
    if changed:
        logger.info(
            "Registration %s status %s -> %s",
            registration.id,
            previous,
            registration.status,
        )
    return registration


def cancel(registration_id: str, acting_user_id: str) -> Registration:
    """Cancel a registration; cancelling a cancelled row is a no-op."""
    with get_session() as session:
        registration = get_registration(session, registration_id, for_update=True)
        if registration.user_id != acting_user_id:
            _require_event_manager(session, registration, acting_user_id)
        changed = apply_transition(registration, "cancelled")
        session.add(registration)
    if changed:
        logger.info(
            "Registration %s cancelled by user %s", registration.id, acting_user_id
        )
    return registration


def registration_counts(session: Session, event: Event) -> dict[str, int | None]:
    rows = session.execute(
        select(Registration.status, func.count(Registration.id))
        .where(Registration.event_id == event.id)
        .group_by(Registration.status)
    ).all()
    counts: dict[str, int | None] = {status: 0 for status in REGISTRATION_STATUSES}
    for status, count in rows:
        counts[status] = count
    active = sum(counts[status] or 0 for status in ACTIVE_REGISTRATION_STATUSES)
    counts["active"] = active
    counts["capacity"] = event.capacity
    counts["available"] = (
        max(event.capacity - active, 0) if event.capacity is not None else None
    )
    return counts


def list_event_registrations(
    session: Session,
    event: Event,
    *,
    actor: Profile | None,
    limit: int | None = None,
    offset: int = 0,
) -> Sequence[Registration]:
    if not can_manage_event(actor, event):
        raise PermissionDeniedError("Only the event organizer can list registrations")
    limit = min(max(limit or settings.registrations_per_page, 1), 200)
    stmt = (
        select(Registration)
        .where(Registration.event_id == event.id)
        .order_by(Registration.registered_at.desc(), Registration.id)
        .limit(limit)
        .offset(max(offset, 0))
    )
    return session.scalars(stmt).all()


def list_user_registrations(session: Session, user_id: str) -> Sequence[Registration]:
    stmt = (
        select(Registration)
        .where(Registration.user_id == user_id)
        .order_by(Registration.registered_at.desc())
    )
    return session.scalars(stmt).all()


def previous_registration(
    session: Session, event_id: str, user_id: str
) -> Registration | None:
    """The pair's row in any status, used to prefill a re-registration form."""
    return find_registration(session, event_id, user_id)
