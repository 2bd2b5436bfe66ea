"""SQLAlchemy models for EventDesk."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .config import EVENT_ID_WIDTH
from .utils import utcnow

Base = declarative_base()

ROLES = ("participant", "organizer", "admin")
EVENT_STATUSES = ("draft", "published", "cancelled", "completed")
REGISTRATION_STATUSES = ("registered", "attended", "cancelled")
ACTIVE_REGISTRATION_STATUSES = ("registered", "attended")
NOTIFICATION_KINDS = (
    "registration",
    "event_update",
    "reminder",
    "general",
    "payment",
    "role_change",
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint(_in_clause("role", ROLES), name="ck_profiles_role"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True)
    api_token = Column(String(128), nullable=False, unique=True)
    full_name = Column(Text, nullable=True)
    phone = Column(String(20), nullable=True)
    institution = Column(String(255), nullable=True)
    position = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    role = Column(String(16), nullable=False, default="participant", index=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    events = relationship("Event", back_populates="organizer", passive_deletes=True)
    registrations = relationship(
        "Registration",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    notifications = relationship(
        "Notification",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("capacity IS NULL OR capacity > 0", name="ck_events_capacity"),
        CheckConstraint(_in_clause("status", EVENT_STATUSES), name="ck_events_status"),
    )

    id = Column(String(EVENT_ID_WIDTH), primary_key=True)
    # Events outlive their organizer so issued ids are never recycled.
    organizer_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    capacity = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default="draft")
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    organizer = relationship("Profile", back_populates="events")
    registrations = relationship(
        "Registration",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_open(self) -> bool:
        return self.status == "published"


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_registrations_event_user"),
        CheckConstraint(
            _in_clause("status", REGISTRATION_STATUSES), name="ck_registrations_status"
        ),
        Index("ix_registrations_event_status", "event_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(EVENT_ID_WIDTH),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    payload = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="registered")
    registered_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="registrations")
    user = relationship("Profile", back_populates="registrations")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REGISTRATION_STATUSES


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    event_id = Column(
        String(EVENT_ID_WIDTH),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=True,
    )
    kind = Column(String(32), nullable=False, default="general")
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("Profile", back_populates="notifications")
