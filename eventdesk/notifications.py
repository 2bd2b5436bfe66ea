"""Best-effort notifications.

A notifier is called after the triggering unit of work has committed.
``Notifier.notify`` never raises: delivery failures are logged and dropped,
so a broken side effect cannot turn a successful admission or role change
into a reported failure.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import scheduler
from .config import settings
from .database import get_session
from .errors import NotFoundError
from .models import NOTIFICATION_KINDS, Notification
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


class Notifier:
    """Fire-and-forget delivery of ``(user_id, kind, payload)``."""

    def deliver(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        try:
            self.deliver(user_id, kind, payload)
        except Exception:
            logger.exception(
                "Failed to deliver %s notification to user %s", kind, user_id
            )


class NullNotifier(Notifier):
    def deliver(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        logger.debug("Dropping %s notification for user %s", kind, user_id)


class DatabaseNotifier(Notifier):
    """Persist an in-app notification row in its own unit of work."""

    def deliver(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        with get_session() as session:
            create_notification(
                session,
                user_id=user_id,
                kind=kind,
                title=payload.get("title") or kind.replace("_", " ").title(),
                message=payload.get("message") or "",
                event_id=payload.get("event_id"),
            )


class ScheduledNotifier(Notifier):
    """Hand delivery to the background scheduler when it is running."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def deliver(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        if scheduler.submit(self.inner.notify, user_id, kind, dict(payload)):
            return
        self.inner.notify(user_id, kind, payload)


def default_notifier() -> Notifier:
    if not settings.notifications_enabled:
        return NullNotifier()
    return ScheduledNotifier(DatabaseNotifier())


def create_notification(
    session: Session,
    *,
    user_id: str,
    kind: str,
    title: str,
    message: str,
    event_id: str | None = None,
) -> Notification:
    normalized_kind = kind if kind in NOTIFICATION_KINDS else "general"
    notification = Notification(
        user_id=user_id,
        event_id=event_id,
        kind=normalized_kind,
        title=title,
        message=message,
        created_at=utcnow(),
    )
    session.add(notification)
    session.flush()
    return notification


def list_notifications(
    session: Session, user_id: str, *, unread_only: bool = False, limit: int = 50
) -> Sequence[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    return session.scalars(stmt).all()


def mark_read(session: Session, notification_id: str, user_id: str) -> Notification:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        raise NotFoundError("Notification not found")
    notification.read = True
    session.add(notification)
    session.flush()
    return notification


def mark_all_read(session: Session, user_id: str) -> int:
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    return result.rowcount or 0
