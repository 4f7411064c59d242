from datetime import date, timedelta

import mongomock
import pytest

from chats import ChatService
from config import Settings
from database import ensure_indexes
from discussions import DiscussionService
from orders import OrderService
from policies import AccessPolicy
from ratings import RatingService
from schemas import TripCreate
from trips import TripService


class RecordingChannel:
    """Stands in for RealtimeChannel and keeps every published event."""

    def __init__(self):
        self.events = []

    def publish(self, event, payload, room=None):
        self.events.append((event, payload, room))

    def named(self, event):
        return [e for e in self.events if e[0] == event]


@pytest.fixture
def db():
    database = mongomock.MongoClient().trip_collab_test
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(super_admin_email="root@example.com", super_admin_id=None)


@pytest.fixture
def policy(settings):
    return AccessPolicy.from_settings(settings)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def discussions(db, channel, policy, settings):
    return DiscussionService(db, channel, policy, settings)


@pytest.fixture
def chats(db, channel, policy, settings):
    return ChatService(db, channel, policy, settings)


@pytest.fixture
def trips(db, discussions, channel, policy, settings):
    return TripService(db, discussions, channel, policy, settings)


@pytest.fixture
def ratings(db, settings):
    return RatingService(db, settings)


@pytest.fixture
def orders(db, policy):
    return OrderService(db, policy)


@pytest.fixture
def make_user(db):
    def _make(name, role="traveler", email=None):
        doc = {"name": name, "email": email or f"{name.lower()}@example.com", "role": role}
        db["user"].insert_one(doc)
        doc["id"] = str(doc["_id"])
        return doc

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("Alice")


@pytest.fixture
def bob(make_user):
    return make_user("Bob")


@pytest.fixture
def carol(make_user):
    return make_user("Carol")


@pytest.fixture
def make_trip(trips):
    def _make(organizer, **overrides):
        start = date.today() + timedelta(days=30)
        data = {
            "title": "Tatra ridge traverse",
            "destination": "Zakopane",
            "start_date": start,
            "end_date": start + timedelta(days=4),
            "max_participants": 4,
        }
        data.update(overrides)
        return trips.create_trip(organizer, TripCreate(**data))

    return _make


@pytest.fixture
def trip(make_trip, alice):
    return make_trip(alice)
