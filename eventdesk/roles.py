"""Role and account safety checks.

``check_role_change`` and ``check_delete`` only decide; they raise a
:class:`RoleViolation` or return ``None``. ``change_role`` and
``delete_account`` apply the write, running the same checks inside the
writing transaction after locking the admin rows, so two admins demoting
each other concurrently cannot both observe a second admin.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .database import get_session
from .errors import (
    LastAdminError,
    NotFoundError,
    PermissionDeniedError,
    SelfModificationError,
)
from .models import ROLES, Profile
from .notifications import Notifier, default_notifier

logger = logging.getLogger("uvicorn.error")


def normalize_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Invalid role {role!r}")
    return normalized


def count_admins(session: Session) -> int:
    stmt = select(func.count(Profile.id)).where(Profile.role == "admin")
    return session.scalar(stmt) or 0


def _lock_admins(session: Session) -> None:
    stmt = select(Profile.id).where(Profile.role == "admin").with_for_update()
    session.scalars(stmt).all()


def _get_target(session: Session, target_user_id: str) -> Profile:
    target = session.get(Profile, target_user_id)
    if not target:
        raise NotFoundError("User not found")
    return target


def check_role_change(
    session: Session, target_user_id: str, new_role: str, acting_user_id: str
) -> None:
    if acting_user_id == target_user_id:
        raise SelfModificationError("You cannot change your own role.")
    role = normalize_role(new_role)
    target = _get_target(session, target_user_id)
    if target.role == "admin" and role != "admin" and count_admins(session) <= 1:
        raise LastAdminError("Cannot remove the last admin.")


def check_delete(session: Session, target_user_id: str, acting_user_id: str) -> None:
    if acting_user_id == target_user_id:
        raise SelfModificationError("You cannot delete your own account.")
    target = _get_target(session, target_user_id)
    if target.role == "admin" and count_admins(session) <= 1:
        raise LastAdminError("Cannot delete the last admin.")


def _require_admin(session: Session, acting_user_id: str) -> Profile:
    # Read after _lock_admins so a concurrent demotion is seen.
    actor = session.get(Profile, acting_user_id, populate_existing=True)
    if not actor or not actor.is_admin:
        raise PermissionDeniedError("Administrator access required")
    return actor


def change_role(
    target_user_id: str,
    new_role: str,
    acting_user_id: str,
    *,
    notifier: Notifier | None = None,
) -> Profile:
    with get_session() as session:
        _lock_admins(session)
        _require_admin(session, acting_user_id)
        check_role_change(session, target_user_id, new_role, acting_user_id)
        role = normalize_role(new_role)
        target = _get_target(session, target_user_id)
        previous = target.role
        target.role = role
        session.add(target)
    if previous == role:
        return target
    logger.info(
        "User %s role %s -> %s by admin %s",
        target.id,
        previous,
        role,
        acting_user_id,
    )
    (notifier or default_notifier()).notify(
        target.id,
        "role_change",
        {
            "title": "Your role has changed",
            "message": f"Your role is now {role}.",
        },
    )
    return target


def delete_account(target_user_id: str, acting_user_id: str) -> None:
    with get_session() as session:
        _lock_admins(session)
        _require_admin(session, acting_user_id)
        check_delete(session, target_user_id, acting_user_id)
        target = _get_target(session, target_user_id)
        session.delete(target)
    logger.info("User %s deleted by admin %s", target_user_id, acting_user_id)


def role_stats(session: Session) -> dict[str, int]:
    rows = session.execute(
        select(Profile.role, func.count(Profile.id)).group_by(Profile.role)
    ).all()
    stats = {f"{role}s": 0 for role in ROLES}
    for role, count in rows:
        stats[f"{role}s"] = count
    stats["total"] = sum(stats.values())
    return stats
