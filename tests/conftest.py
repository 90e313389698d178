from datetime import date, datetime, timedelta, timezone

import mongomock
import pytest

from eventplanner.household import Child, HouseholdConfig, HouseholdContact
from eventplanner.models import CanonicalEvent, Location
from eventplanner.store import EventStore

# Zero microseconds: mongomock stores datetimes at millisecond precision.
NOW = datetime(2025, 6, 2, 17, 0, tzinfo=timezone.utc)  # Monday 10:00 in Los Angeles


class FakeHouseholdProvider:
    def __init__(self, household):
        self.household = household

    def get(self):
        return self.household

    def invalidate(self):
        pass


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    return mongomock.MongoClient().eventplanner_test


@pytest.fixture
def store(db):
    return EventStore(db)


@pytest.fixture
def household():
    return HouseholdConfig(
        timezone="America/Los_Angeles",
        max_cost_per_event=50.0,
        children=[Child(name="Ada", birth_date=date(2021, 3, 1))],
        contact=HouseholdContact(parent_name="Sam Rivera", email="sam@example.com", phone="+15550001111"),
    )


@pytest.fixture
def household_provider(household):
    return FakeHouseholdProvider(household)


@pytest.fixture
def no_sleep():
    delays = []
    return delays.append


def make_event(event_id="evt-1", title="Family Art Workshop", start=None, **fields):
    """A discovered canonical event; Saturday 10:00 Los Angeles time by default."""
    defaults = {
        "id": event_id,
        "title": title,
        "start": start or datetime(2025, 6, 14, 17, 0, tzinfo=timezone.utc),
        "location": Location(address="100 Larkin St, San Francisco, CA", venue="Main Library"),
        "cost": 0.0,
        "sources": ["library"],
        "first_seen_at": NOW - timedelta(days=1),
        "updated_at": NOW - timedelta(days=1),
    }
    defaults.update(fields)
    return CanonicalEvent(**defaults)


@pytest.fixture
def event_factory():
    return make_event
