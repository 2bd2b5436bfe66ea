from __future__ import annotations

import dataclasses

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from eventdesk import admission, database
from eventdesk.errors import (
    AdmissionError,
    AlreadyRegisteredError,
    CapacityExceededError,
    IncompleteProfileError,
    InvalidTransitionError,
    NotFoundError,
    NotOpenError,
    PermissionDeniedError,
    StoreBusyError,
    TransitionError,
)
from eventdesk.models import Notification, Registration
from eventdesk.notifications import NullNotifier, Notifier


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def deliver(self, user_id, kind, payload):
        self.sent.append((user_id, kind, payload))


class ExplodingNotifier(Notifier):
    def deliver(self, user_id, kind, payload):
        raise RuntimeError("mail server on fire")


def _registration_rows(event_id: str) -> list[Registration]:
    with database.get_session() as session:
        return session.scalars(
            select(Registration).where(Registration.event_id == event_id)
        ).all()


def test_admit_creates_registered_row_and_notifies(make_event, make_profile):
    event = make_event(capacity=10)
    user = make_profile()
    notifier = RecordingNotifier()

    registration = admission.admit(
        event.id, user.id, {"motivation": "learn"}, notifier=notifier
    )

    assert registration.status == "registered"
    assert registration.payload == {"motivation": "learn"}
    assert registration.event_id == event.id
    assert notifier.sent[0][0] == user.id
    assert notifier.sent[0][1] == "registration"
    assert notifier.sent[0][2]["registration_id"] == registration.id


def test_admit_uses_database_notifier_by_default(make_event, make_profile):
    event = make_event()
    user = make_profile()
    admission.admit(event.id, user.id)
    with database.get_session() as session:
        notification = session.scalars(select(Notification)).one()
    assert notification.user_id == user.id
    assert notification.kind == "registration"
    assert notification.event_id == event.id


def test_admit_accepts_lowercase_event_id(make_event, make_profile):
    event = make_event()
    registration = admission.admit(
        event.id.lower(), make_profile().id, notifier=NullNotifier()
    )
    assert registration.event_id == event.id


def test_admit_unknown_event_is_not_found(make_profile):
    with pytest.raises(NotFoundError):
        admission.admit("ZZZZZZ", make_profile().id, notifier=NullNotifier())


@pytest.mark.parametrize("status", ["draft", "cancelled", "completed"])
def test_admit_rejects_events_that_are_not_published(make_event, make_profile, status):
    event = make_event(status=status)
    with pytest.raises(NotOpenError) as excinfo:
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    assert excinfo.value.event_status == status
    assert isinstance(excinfo.value, AdmissionError)
    assert _registration_rows(event.id) == []


def test_admit_lists_missing_profile_fields(make_event, make_profile):
    event = make_event()
    user = make_profile(phone=None, city="   ")
    with pytest.raises(IncompleteProfileError) as excinfo:
        admission.admit(event.id, user.id, notifier=NullNotifier())
    assert excinfo.value.missing_fields == ["phone", "city"]
    assert excinfo.value.to_dict()["missing_fields"] == ["phone", "city"]
    assert _registration_rows(event.id) == []


def test_required_profile_fields_are_configurable(monkeypatch, make_event, make_profile):
    monkeypatch.setattr(
        admission,
        "settings",
        dataclasses.replace(admission.settings, required_profile_fields=("full_name",)),
    )
    event = make_event()
    user = make_profile(phone=None, institution=None)
    registration = admission.admit(event.id, user.id, notifier=NullNotifier())
    assert registration.status == "registered"


def test_admit_twice_reports_already_registered(make_event, make_profile):
    event = make_event()
    user = make_profile()
    admission.admit(event.id, user.id, notifier=NullNotifier())
    with pytest.raises(AlreadyRegisteredError) as excinfo:
        admission.admit(event.id, user.id, notifier=NullNotifier())
    assert excinfo.value.status == "registered"
    assert len(_registration_rows(event.id)) == 1


def test_duplicate_is_reported_before_capacity_on_full_event(make_event, make_profile):
    event = make_event(capacity=1)
    user = make_profile()
    admission.admit(event.id, user.id, notifier=NullNotifier())
    with pytest.raises(AlreadyRegisteredError):
        admission.admit(event.id, user.id, notifier=NullNotifier())


def test_attended_registration_counts_as_duplicate(make_event, make_profile):
    event = make_event()
    user = make_profile()
    registration = admission.admit(event.id, user.id, notifier=NullNotifier())
    admission.set_status(registration.id, "attended")
    with pytest.raises(AlreadyRegisteredError) as excinfo:
        admission.admit(event.id, user.id, notifier=NullNotifier())
    assert excinfo.value.status == "attended"


def test_capacity_is_enforced(make_event, make_profile):
    event = make_event(capacity=2)
    for _ in range(2):
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    with pytest.raises(CapacityExceededError) as excinfo:
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    assert excinfo.value.capacity == 2
    assert len(_registration_rows(event.id)) == 2


def test_unbounded_event_admits_everyone(make_event, make_profile):
    event = make_event(capacity=None)
    for _ in range(15):
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    with database.get_session() as session:
        assert admission.active_count(session, event.id) == 15


def test_cancellation_frees_a_slot(make_event, make_profile):
    event = make_event(capacity=1)
    first, second = make_profile(), make_profile()
    registration = admission.admit(event.id, first.id, notifier=NullNotifier())
    with pytest.raises(CapacityExceededError):
        admission.admit(event.id, second.id, notifier=NullNotifier())

    admission.cancel(registration.id, first.id)
    admitted = admission.admit(event.id, second.id, notifier=NullNotifier())
    assert admitted.status == "registered"


def test_readmission_reuses_the_cancelled_row(make_event, make_profile):
    event = make_event(capacity=5)
    user = make_profile()
    original = admission.admit(
        event.id, user.id, {"answer": "first"}, notifier=NullNotifier()
    )
    admission.cancel(original.id, user.id)

    notifier = RecordingNotifier()
    again = admission.admit(event.id, user.id, {"answer": "second"}, notifier=notifier)

    assert again.id == original.id
    assert again.status == "registered"
    assert again.payload == {"answer": "second"}
    assert again.registered_at >= original.registered_at
    assert "active again" in notifier.sent[0][2]["message"]
    rows = _registration_rows(event.id)
    assert [row.id for row in rows] == [original.id]


def test_organizer_cancel_then_readmission_takes_new_payload(make_profile, make_event):
    organizer = make_profile(role="organizer")
    event = make_event(organizer=organizer, capacity=3)
    user = make_profile()
    original = admission.admit(
        event.id, user.id, {"answer": "first"}, notifier=NullNotifier()
    )

    cancelled = admission.cancel(original.id, organizer.id)
    assert cancelled.status == "cancelled"

    again = admission.admit(
        event.id, user.id, {"answer": "second"}, notifier=NullNotifier()
    )
    assert again.id == original.id
    assert again.status == "registered"
    assert again.payload == {"answer": "second"}
    assert len(_registration_rows(event.id)) == 1


def test_readmission_respects_capacity(make_event, make_profile):
    event = make_event(capacity=1)
    first, second = make_profile(), make_profile()
    registration = admission.admit(event.id, first.id, notifier=NullNotifier())
    admission.cancel(registration.id, first.id)
    admission.admit(event.id, second.id, notifier=NullNotifier())

    with pytest.raises(CapacityExceededError):
        admission.admit(event.id, first.id, notifier=NullNotifier())
    assert {row.status for row in _registration_rows(event.id)} == {
        "registered",
        "cancelled",
    }


def test_failing_notifier_does_not_fail_admission(make_event, make_profile, caplog):
    event = make_event()
    user = make_profile()
    registration = admission.admit(event.id, user.id, notifier=ExplodingNotifier())
    assert registration.status == "registered"
    assert "Failed to deliver registration notification" in caplog.text
    assert len(_registration_rows(event.id)) == 1


def test_busy_store_is_retried_then_reported(monkeypatch, make_event, make_profile):
    event = make_event()
    user = make_profile()
    calls = []

    def _locked(session, **kwargs):
        calls.append(kwargs)
        raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

    monkeypatch.setattr(admission, "admit_in_session", _locked)
    with pytest.raises(StoreBusyError) as excinfo:
        admission.admit(event.id, user.id, notifier=NullNotifier())
    assert len(calls) == admission.settings.admission_max_attempts
    assert excinfo.value.retryable
    assert excinfo.value.status_code == 503


def test_busy_store_recovers_on_retry(monkeypatch, make_event, make_profile):
    event = make_event()
    user = make_profile()
    real = admission.admit_in_session
    failures = iter([True])

    def _flaky(session, **kwargs):
        if next(failures, False):
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return real(session, **kwargs)

    monkeypatch.setattr(admission, "admit_in_session", _flaky)
    registration = admission.admit(event.id, user.id, notifier=NullNotifier())
    assert registration.status == "registered"


def test_other_operational_errors_propagate(monkeypatch, make_event, make_profile):
    event = make_event()

    def _broken(session, **kwargs):
        raise OperationalError("SELECT", {}, Exception("no such table: events"))

    monkeypatch.setattr(admission, "admit_in_session", _broken)
    with pytest.raises(OperationalError):
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())


def test_lost_uniqueness_race_maps_to_already_registered(
    monkeypatch, make_event, make_profile
):
    event = make_event()

    def _duplicate(session, **kwargs):
        raise IntegrityError(
            "INSERT",
            {},
            Exception(
                "UNIQUE constraint failed: registrations.event_id, registrations.user_id"
            ),
        )

    monkeypatch.setattr(admission, "admit_in_session", _duplicate)
    with pytest.raises(AlreadyRegisteredError):
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())


def test_store_rejects_second_row_for_pair(make_event, make_profile):
    event = make_event()
    user = make_profile()
    admission.admit(event.id, user.id, notifier=NullNotifier())
    with pytest.raises(IntegrityError):
        with database.get_session() as session:
            session.add(Registration(event_id=event.id, user_id=user.id))
            session.flush()


def test_set_status_marks_attendance(make_event, make_profile):
    event = make_event()
    registration = admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    updated = admission.set_status(
        registration.id, "attended", acting_user_id=event.organizer_id
    )
    assert updated.status == "attended"


@pytest.mark.parametrize(
    ("path", "target"),
    [
        (["attended"], "registered"),
        (["cancelled"], "registered"),
        (["cancelled"], "attended"),
        ([], "registered"),
        ([], "waitlisted"),
    ],
)
def test_set_status_rejects_illegal_transitions(make_event, make_profile, path, target):
    event = make_event()
    registration = admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    for step in path:
        admission.set_status(registration.id, step)
    with pytest.raises(InvalidTransitionError) as excinfo:
        admission.set_status(registration.id, target)
    assert isinstance(excinfo.value, TransitionError)
    assert excinfo.value.to_status == target


def test_cancelling_twice_is_a_no_op(make_event, make_profile):
    event = make_event()
    user = make_profile()
    registration = admission.admit(event.id, user.id, notifier=NullNotifier())
    first = admission.set_status(registration.id, "cancelled")
    second = admission.set_status(registration.id, "cancelled")
    assert first.status == second.status == "cancelled"
    assert second.last_modified == first.last_modified

    again = admission.cancel(registration.id, user.id)
    assert again.status == "cancelled"


def test_attended_registration_can_be_cancelled(make_event, make_profile):
    event = make_event()
    registration = admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    admission.set_status(registration.id, "attended")
    assert admission.set_status(registration.id, "cancelled").status == "cancelled"


def test_set_status_requires_event_manager(make_event, make_profile):
    event = make_event()
    user = make_profile()
    registration = admission.admit(event.id, user.id, notifier=NullNotifier())
    with pytest.raises(PermissionDeniedError):
        admission.set_status(registration.id, "attended", acting_user_id=user.id)

    admin = make_profile(role="admin")
    assert (
        admission.set_status(registration.id, "attended", acting_user_id=admin.id).status
        == "attended"
    )


def test_cancel_by_stranger_is_denied(make_event, make_profile):
    event = make_event()
    registration = admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    with pytest.raises(PermissionDeniedError):
        admission.cancel(registration.id, make_profile().id)
    cancelled = admission.cancel(registration.id, event.organizer_id)
    assert cancelled.status == "cancelled"


def test_unknown_registration_is_not_found():
    with pytest.raises(NotFoundError):
        admission.set_status("missing", "attended")


def test_registration_counts_and_listing(make_event, make_profile):
    organizer = make_profile(role="organizer")
    event = make_event(organizer=organizer, capacity=4)
    users = [make_profile() for _ in range(3)]
    registrations = [
        admission.admit(event.id, user.id, notifier=NullNotifier()) for user in users
    ]
    admission.set_status(registrations[0].id, "attended")
    admission.cancel(registrations[1].id, users[1].id)

    with database.get_session() as session:
        counts = admission.registration_counts(session, event)
        listed = admission.list_event_registrations(session, event, actor=organizer)
        with pytest.raises(PermissionDeniedError):
            admission.list_event_registrations(session, event, actor=users[0])
        mine = admission.list_user_registrations(session, users[1].id)
        previous = admission.previous_registration(session, event.id, users[1].id)
        total = session.scalar(select(func.count(Registration.id)))

    assert counts == {
        "registered": 1,
        "attended": 1,
        "cancelled": 1,
        "active": 2,
        "capacity": 4,
        "available": 2,
    }
    assert len(listed) == 3
    assert [r.id for r in mine] == [registrations[1].id]
    assert previous.status == "cancelled"
    assert total == 3


def test_listing_is_paginated(make_event, make_profile):
    organizer = make_profile(role="organizer")
    event = make_event(organizer=organizer)
    for _ in range(5):
        admission.admit(event.id, make_profile().id, notifier=NullNotifier())
    with database.get_session() as session:
        page = admission.list_event_registrations(
            session, event, actor=organizer, limit=2, offset=4
        )
    assert len(page) == 1
