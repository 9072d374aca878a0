from datetime import datetime, timedelta, timezone

import pytest

from parking_booking.lifecycle.engine import LifecycleEngine
from parking_booking.lifecycle.models import User, UserRole, available_document
from parking_booking.storage.memory import (
    InMemoryHistorySink,
    InMemorySlotStore,
    InMemoryUserDirectory,
)

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
SLOT_IDS = ["A-01", "A-02", "A-03"]


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_users() -> list[User]:
    return [
        User(id="alice", name="Alice", email="alice@example.com", vehicle_number="KA-01-1111"),
        User(id="bob", name="Bob", email="bob@example.com", vehicle_number="KA-02-2222"),
        User(id="admin", name="Admin", email="admin@example.com", role=UserRole.ADMIN),
    ]


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def users():
    return InMemoryUserDirectory(make_users())


@pytest.fixture()
def store():
    s = InMemorySlotStore()
    for slot_id in SLOT_IDS:
        s.insert(available_document(slot_id))
    return s


@pytest.fixture()
def history():
    return InMemoryHistorySink()


@pytest.fixture()
def engine(store, history, users, clock):
    return LifecycleEngine(
        store=store,
        history=history,
        users=users,
        clock=clock,
        price_per_hour=50,
        window_minutes=60,
    )


@pytest.fixture()
def park(engine, clock):
    """Drive a user's booking up to the occupied state."""

    def _park(user_id: str = "alice", slot_id: str = "A-01", vehicle: str = "KA-01-1111"):
        engine.reserve(user_id, slot_id, vehicle)
        clock.advance(minutes=10)
        engine.request_occupied(user_id)
        return engine.approve_occupied(slot_id, "admin")

    return _park
