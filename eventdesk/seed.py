"""Development helpers for populating fake organizers, events and registrations."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from . import admission
from .crud import create_event, create_profile
from .database import get_session
from .errors import AdmissionError
from .models import Profile
from .notifications import NullNotifier
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Workshop",
    "Seminar",
    "Hackathon",
    "Meetup",
    "Bootcamp",
    "Career Fair",
    "Panel",
    "Lecture",
]
_positions = ["Student", "Researcher", "Engineer", "Lecturer", "Designer", "Analyst"]


def seed_fake_data(
    *,
    organizer_count: int = 3,
    events_per_organizer: int = 2,
    participant_count: int = 20,
) -> dict[str, int]:
    """Populate the database with synthetic profiles, events and registrations.

    Registrations go through :func:`admission.admit`, so seeded data respects
    capacity and profile completeness like real traffic does.
    """
    if organizer_count < 0:
        raise ValueError("organizer_count must be >= 0")
    if events_per_organizer < 1:
        raise ValueError("events_per_organizer must be >= 1")
    if participant_count < 0:
        raise ValueError("participant_count must be >= 0")

    init_db()
    fake = Faker()
    stats = {
        "organizers": 0,
        "events": 0,
        "participants": 0,
        "registrations": 0,
        "rejected": 0,
    }

    with get_session() as session:
        event_ids: list[str] = []
        for _ in range(organizer_count):
            organizer = _create_profile(session, fake, role="organizer")
            stats["organizers"] += 1
            for _ in range(events_per_organizer):
                event_ids.append(_create_event(session, fake, organizer))
                stats["events"] += 1
        participant_ids = []
        for _ in range(participant_count):
            participant = _create_profile(
                session, fake, role="participant", complete=random.random() < 0.85
            )
            participant_ids.append(participant.id)
            stats["participants"] += 1

    notifier = NullNotifier()
    for user_id in participant_ids:
        for event_id in random.sample(event_ids, k=min(len(event_ids), 3)):
            try:
                admission.admit(
                    event_id,
                    user_id,
                    {"motivation": fake.sentence()},
                    notifier=notifier,
                )
            except AdmissionError:
                stats["rejected"] += 1
                continue
            stats["registrations"] += 1

    return stats


def _create_profile(
    session: Session, fake: Faker, *, role: str, complete: bool = True
) -> Profile:
    fields = {
        "full_name": fake.name(),
        "phone": fake.numerify("+1##########"),
        "institution": fake.company(),
        "position": random.choice(_positions),
        "city": fake.city(),
    }
    if not complete:
        fields[random.choice(list(fields))] = None
    return create_profile(session, email=fake.unique.email(), role=role, **fields)


def _create_event(session: Session, fake: Faker, organizer: Profile) -> str:
    start_time = _random_start_time()
    event = create_event(
        session,
        organizer=organizer,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        location=fake.address().replace("\n", ", "),
        start_time=start_time,
        end_time=start_time + timedelta(hours=random.randint(1, 6)),
        capacity=random.choice([None, 5, 10, 25]),
        status="published",
    )
    return event.id


def _random_start_time() -> datetime:
    day_offset = random.randint(1, 30)
    minute_offset = random.randint(0, 23 * 60)
    return utcnow() + timedelta(days=day_offset, minutes=minute_offset)
