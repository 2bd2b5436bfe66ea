"""FastAPI application for EventDesk."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any, Literal
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import admission, roles
from .config import settings
from .crud import (
    PROFILE_FIELDS,
    can_manage_event,
    create_event,
    get_event,
    get_profile,
    get_profile_by_token,
    set_event_status,
    update_event,
    update_profile,
)
from .database import SessionLocal, get_session
from .errors import EventDeskError, PermissionDeniedError
from .models import Event, Notification, Profile, Registration
from .notifications import list_notifications, mark_all_read, mark_read
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventdesk")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="EventDesk", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(EventDeskError)
async def eventdesk_error_handler(request: Request, exc: EventDeskError):
    logger.warning(
        "%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message
    )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def current_profile(request: Request) -> Profile:
    """Resolve the bearer token to a profile.

    The lookup runs in its own short session so no transaction is held open
    while the endpoint runs its own unit of work.
    """
    token = _get_bearer_token(request)
    with get_session() as session:
        profile = get_profile_by_token(session, token)
    if profile is None:
        raise HTTPException(status_code=401, detail="Missing or invalid API token")
    return profile


def require_admin(actor: Profile = Depends(current_profile)) -> Profile:
    if not actor.is_admin:
        raise PermissionDeniedError("Administrator access required")
    return actor


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_profile(profile: Profile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "role": profile.role,
    }


def _serialize_own_profile(profile: Profile) -> dict[str, Any]:
    data = _serialize_profile(profile)
    data.update({field: getattr(profile, field) for field in PROFILE_FIELDS})
    data["missing_fields"] = admission.missing_profile_fields(profile)
    return data


def _serialize_event(
    event: Event, *, counts: dict[str, int | None] | None = None
) -> dict[str, Any]:
    data = {
        "id": event.id,
        "organizer_id": event.organizer_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": _isoformat(event.start_time),
        "end_time": _isoformat(event.end_time),
        "capacity": event.capacity,
        "status": event.status,
        "created_at": _isoformat(event.created_at),
    }
    if counts is not None:
        data["registrations"] = counts
    return data


def _serialize_registration(registration: Registration) -> dict[str, Any]:
    return {
        "id": registration.id,
        "event_id": registration.event_id,
        "user_id": registration.user_id,
        "status": registration.status,
        "registration_data": registration.payload,
        "registered_at": _isoformat(registration.registered_at),
        "last_modified": _isoformat(registration.last_modified),
    }


def _serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "kind": notification.kind,
        "event_id": notification.event_id,
        "title": notification.title,
        "message": notification.message,
        "read": notification.read,
        "created_at": _isoformat(notification.created_at),
    }


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    capacity: int | None = Field(
        None, ge=1, description="Maximum number of active registrations"
    )
    status: Literal["draft", "published"] = "draft"


class EventUpdatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    capacity: int | None = Field(
        None, ge=1, description="Maximum number of active registrations"
    )


class ProfileUpdatePayload(BaseModel):
    full_name: str | None = None
    phone: str | None = None
    institution: str | None = None
    position: str | None = None
    city: str | None = None


class StatusPayload(BaseModel):
    status: str


class RegistrationCreatePayload(BaseModel):
    registration_data: dict[str, Any] | None = None


class RolePayload(BaseModel):
    role: str


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


# -------- JSON API (v1) --------


@app.get("/api/v1/profile/me")
def api_get_own_profile(actor: Profile = Depends(current_profile)):
    return {"user": _serialize_own_profile(actor)}


@app.put("/api/v1/profile/me")
def api_update_own_profile(
    payload: ProfileUpdatePayload,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    profile = update_profile(
        db, get_profile(db, actor.id), **payload.model_dump(exclude_unset=True)
    )
    return {"user": _serialize_own_profile(profile)}


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    if actor.role not in ("organizer", "admin"):
        raise PermissionDeniedError("Only organizers can create events")
    if payload.end_time and payload.end_time < payload.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    event = create_event(
        db,
        organizer=get_profile(db, actor.id),
        title=payload.title.strip(),
        description=payload.description,
        location=payload.location,
        start_time=payload.start_time,
        end_time=payload.end_time,
        capacity=payload.capacity,
        status=payload.status,
    )
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    event = get_event(db, event_id)
    counts = admission.registration_counts(db, event)
    return {"event": _serialize_event(event, counts=counts)}


@app.put("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    if not can_manage_event(actor, event):
        raise PermissionDeniedError("Only the event organizer can edit this event")
    if payload.end_time and payload.end_time < payload.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    event = update_event(
        db,
        event,
        title=payload.title.strip(),
        description=payload.description,
        location=payload.location,
        start_time=payload.start_time,
        end_time=payload.end_time,
        capacity=payload.capacity,
    )
    return {"event": _serialize_event(event)}


@app.patch("/api/v1/events/{event_id}/status")
def api_set_event_status(
    event_id: str,
    payload: StatusPayload,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    if not can_manage_event(actor, event):
        raise PermissionDeniedError("Only the event organizer can change its status")
    event = set_event_status(db, event, payload.status)
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/registrations", status_code=201)
def api_register(
    event_id: str,
    payload: RegistrationCreatePayload | None = None,
    actor: Profile = Depends(current_profile),
):
    registration = admission.admit(
        event_id,
        actor.id,
        payload.registration_data if payload else None,
    )
    return {"registration": _serialize_registration(registration)}


@app.get("/api/v1/events/{event_id}/registrations")
def api_list_registrations(
    event_id: str,
    limit: int = Query(settings.registrations_per_page, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    registrations = admission.list_event_registrations(
        db, event, actor=actor, limit=limit, offset=offset
    )
    return {
        "registrations": [_serialize_registration(r) for r in registrations],
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/v1/events/{event_id}/registrations/count")
def api_registration_count(event_id: str, db: Session = Depends(get_db)):
    event = get_event(db, event_id)
    return {"event_id": event.id, **admission.registration_counts(db, event)}


@app.get("/api/v1/events/{event_id}/registrations/previous")
def api_previous_registration(
    event_id: str,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    registration = admission.previous_registration(db, event.id, actor.id)
    return {
        "registration": _serialize_registration(registration) if registration else None
    }


@app.get("/api/v1/registrations/mine")
def api_my_registrations(
    actor: Profile = Depends(current_profile), db: Session = Depends(get_db)
):
    registrations = admission.list_user_registrations(db, actor.id)
    return {"registrations": [_serialize_registration(r) for r in registrations]}


@app.patch("/api/v1/registrations/{registration_id}/status")
def api_set_registration_status(
    registration_id: str,
    payload: StatusPayload,
    actor: Profile = Depends(current_profile),
):
    registration = admission.set_status(
        registration_id, payload.status, acting_user_id=actor.id
    )
    return {"registration": _serialize_registration(registration)}


@app.post("/api/v1/registrations/{registration_id}/cancel")
def api_cancel_registration(
    registration_id: str, actor: Profile = Depends(current_profile)
):
    registration = admission.cancel(registration_id, actor.id)
    return {"registration": _serialize_registration(registration)}


@app.get("/api/v1/admin/users/stats")
def api_user_stats(
    _: Profile = Depends(require_admin), db: Session = Depends(get_db)
):
    return {"stats": roles.role_stats(db)}


@app.patch("/api/v1/admin/users/{user_id}/role")
def api_change_role(
    user_id: str, payload: RolePayload, actor: Profile = Depends(require_admin)
):
    profile = roles.change_role(user_id, payload.role, actor.id)
    return {"user": _serialize_profile(profile)}


@app.delete("/api/v1/admin/users/{user_id}")
def api_delete_user(user_id: str, actor: Profile = Depends(require_admin)):
    roles.delete_account(user_id, actor.id)
    return {"status": "deleted", "user_id": user_id}


@app.get("/api/v1/notifications")
def api_list_notifications(
    unread: bool = Query(False),
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    notifications = list_notifications(db, actor.id, unread_only=unread)
    return {"notifications": [_serialize_notification(n) for n in notifications]}


@app.post("/api/v1/notifications/{notification_id}/read")
def api_mark_notification_read(
    notification_id: str,
    actor: Profile = Depends(current_profile),
    db: Session = Depends(get_db),
):
    notification = mark_read(db, notification_id, actor.id)
    return {"notification": _serialize_notification(notification)}


@app.post("/api/v1/notifications/read-all")
def api_mark_all_notifications_read(
    actor: Profile = Depends(current_profile), db: Session = Depends(get_db)
):
    return {"updated": mark_all_read(db, actor.id)}
