"""Typed outcomes for EventDesk operations.

Every expected rejection is an :class:`EventDeskError` subclass carrying a
stable ``kind`` string and the HTTP status the API maps it to. Callers catch
the specific class (or one of the contract bases ``AdmissionError``,
``TransitionError`` and ``RoleViolation``) and render an actionable message;
only errors outside this hierarchy are treated as internal failures.
"""

from __future__ import annotations

from typing import Any, Sequence


class EventDeskError(Exception):
    kind = "error"
    status_code = 400
    default_message = "The request could not be completed."
    retryable = False

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.details}


class NotFoundError(EventDeskError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found."


class PermissionDeniedError(EventDeskError):
    kind = "forbidden"
    status_code = 403
    default_message = "You are not allowed to do that."


class AdmissionError(EventDeskError):
    """Base for rejected registration attempts."""


class NotOpenError(AdmissionError):
    kind = "not_open"
    default_message = "This event is not accepting registrations."

    def __init__(self, event_status: str, message: str | None = None) -> None:
        super().__init__(message, event_status=event_status)
        self.event_status = event_status


class IncompleteProfileError(AdmissionError):
    kind = "incomplete_profile"
    status_code = 403

    def __init__(self, missing_fields: Sequence[str]) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(
            "Complete your profile first: " + ", ".join(self.missing_fields),
            missing_fields=self.missing_fields,
        )


class CapacityExceededError(AdmissionError):
    kind = "capacity_exceeded"
    status_code = 409
    default_message = "This event has reached its capacity."

    def __init__(self, capacity: int | None = None) -> None:
        super().__init__(capacity=capacity)
        self.capacity = capacity


class AlreadyRegisteredError(AdmissionError):
    kind = "already_registered"
    status_code = 409
    default_message = "You are already registered for this event."

    def __init__(self, status: str | None = None) -> None:
        super().__init__(status=status)
        self.status = status


class TransitionError(EventDeskError):
    """Base for rejected registration status changes."""


class InvalidTransitionError(TransitionError):
    kind = "invalid_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Cannot change a registration from {from_status!r} to {to_status!r}.",
            **{"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class RoleViolation(EventDeskError):
    """Base for role/account changes the guard refuses."""


class SelfModificationError(RoleViolation):
    kind = "self_modification"
    default_message = "You cannot change your own role or delete your own account."


class LastAdminError(RoleViolation):
    kind = "last_admin"
    default_message = "The last administrator cannot be demoted or deleted."


class ExhaustionError(EventDeskError):
    kind = "identifier_exhausted"
    status_code = 503
    retryable = True

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"No free event identifier found after {attempts} attempts; try again.",
            attempts=attempts,
        )
        self.attempts = attempts


class StoreBusyError(EventDeskError):
    kind = "store_busy"
    status_code = 503
    retryable = True
    default_message = "The database is busy at the moment. Please try again."
