from datetime import timedelta, timezone

import pytest

from parking_booking.lifecycle.engine import LifecycleEngine
from parking_booking.lifecycle.errors import ConflictError, NotFoundError
from parking_booking.lifecycle.models import User, available_document
from parking_booking.storage.sql import (
    SqlHistorySink,
    SqlSlotStore,
    SqlUserDirectory,
    build_engine,
    create_schema,
)

from conftest import SLOT_IDS, T0, make_users


@pytest.fixture()
def db():
    engine = build_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sql_store(db):
    store = SqlSlotStore(db)
    for slot_id in SLOT_IDS:
        store.insert(available_document(slot_id))
    return store


@pytest.fixture()
def sql_history(db):
    return SqlHistorySink(db)


@pytest.fixture()
def sql_users(db):
    directory = SqlUserDirectory(db)
    for user in make_users():
        directory.add(user)
    return directory


def reserved_changes(user_id="alice"):
    return {
        "status": "reserved",
        "booked_by": user_id,
        "vehicle_number": "KA-01-1111",
        "reservation_time": T0,
        "arrival_time": T0 + timedelta(hours=1),
    }


def test_insert_is_idempotent(sql_store):
    assert sql_store.insert(available_document("A-01")) is False
    assert sql_store.count() == 3


def test_find_orders_by_id_and_filters(sql_store):
    assert [d["id"] for d in sql_store.find()] == SLOT_IDS
    sql_store.conditional_update("A-02", {"status": "available"}, reserved_changes())
    assert [d["id"] for d in sql_store.find({"status": ["reserved", "leaving"]})] == ["A-02"]
    assert sql_store.find_one({"booked_by": "alice"})["id"] == "A-02"
    assert sql_store.find_one({"booked_by": "bob"}) is None


def test_conditional_update_applies_when_guard_matches(sql_store):
    document = sql_store.conditional_update(
        "A-01", {"status": "available", "booked_by": None}, reserved_changes()
    )
    assert document["status"] == "reserved"
    assert document["booked_by"] == "alice"
    assert document["reservation_time"] == T0
    assert document["reservation_time"].tzinfo is not None


def test_conditional_update_conflicts_on_stale_guard(sql_store):
    sql_store.conditional_update("A-01", {"status": "available"}, reserved_changes("alice"))
    with pytest.raises(ConflictError):
        sql_store.conditional_update("A-01", {"status": "available"}, reserved_changes("bob"))
    assert sql_store.find_by_key("A-01")["booked_by"] == "alice"


def test_conditional_update_unknown_slot(sql_store):
    with pytest.raises(NotFoundError):
        sql_store.conditional_update("Z-01", {}, {"status": "maintenance"})


def test_user_cannot_hold_two_slots(sql_store):
    sql_store.conditional_update("A-01", {"status": "available"}, reserved_changes("alice"))
    with pytest.raises(ConflictError):
        sql_store.conditional_update("A-02", {"status": "available"}, reserved_changes("alice"))
    assert sql_store.find_by_key("A-02")["status"] == "available"


def test_user_directory(sql_users):
    assert sql_users.find_by_id("admin").is_admin
    assert sql_users.add(User(id="alice", name="Again", email="x@example.com")) is False
    assert [u.id for u in sql_users.list_users()] == ["admin", "alice", "bob"]
    with pytest.raises(NotFoundError):
        sql_users.find_by_id("mallory")


def test_engine_round_trip_on_sql_stores(sql_store, sql_history, sql_users, clock):
    engine = LifecycleEngine(sql_store, sql_history, sql_users, clock=clock)

    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=5)
    engine.request_occupied("alice")
    engine.approve_occupied("A-01", "admin")
    clock.advance(hours=2, minutes=30)
    quote = engine.request_leaving("alice")
    engine.pay("alice")
    engine.approve_leaving("A-01", "admin")

    assert quote.cost == 125
    assert sql_store.find_by_key("A-01") == available_document("A-01")
    assert sql_history.count() == 1
    assert sql_history.count(user_id="bob") == 0

    record = sql_history.find(user_id="alice")[0]
    assert record.cost == 125
    assert record.parked_time == T0 + timedelta(minutes=5)
    assert record.duration.total_minutes == 150


def test_history_newest_first(sql_store, sql_history, sql_users, clock):
    engine = LifecycleEngine(sql_store, sql_history, sql_users, clock=clock)
    for slot_id in ("A-01", "A-02"):
        engine.reserve("bob", slot_id, "KA-02-2222")
        engine.request_occupied("bob")
        engine.approve_occupied(slot_id, "admin")
        clock.advance(hours=1)
        engine.request_leaving("bob")
        engine.pay("bob")
        engine.confirm_payment(slot_id, "admin")

    records = sql_history.find(user_id="bob")
    assert [r.slot_id for r in records] == ["A-02", "A-01"]
    assert [r.slot_id for r in sql_history.find(user_id="bob", offset=1, limit=1)] == ["A-01"]


def test_stale_session_guard_conflicts(sql_store):
    first = sql_store.conditional_update("A-01", {"status": "available"}, reserved_changes())
    stale_guard = {
        "status": "reserved",
        "booked_by": "alice",
        "reservation_time": first["reservation_time"],
    }
    sql_store.conditional_update("A-01", stale_guard, available_document("A-01"))

    later = reserved_changes()
    later["reservation_time"] = T0 + timedelta(hours=2)
    sql_store.conditional_update("A-01", {"status": "available"}, later)

    with pytest.raises(ConflictError):
        sql_store.conditional_update("A-01", stale_guard, available_document("A-01"))
    assert sql_store.find_by_key("A-01")["reservation_time"] == T0 + timedelta(hours=2)


def test_timestamp_guard_matches_across_timezones(sql_store):
    sql_store.conditional_update("A-01", {"status": "available"}, reserved_changes())
    local = T0.astimezone(timezone(timedelta(hours=5, minutes=30)))
    document = sql_store.conditional_update(
        "A-01", {"status": "reserved", "reservation_time": local}, {"vehicle_number": "KA-09-9999"}
    )
    assert document["vehicle_number"] == "KA-09-9999"


def test_history_lookup_by_id(sql_store, sql_history, sql_users, clock):
    engine = LifecycleEngine(sql_store, sql_history, sql_users, clock=clock)
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.request_occupied("alice")
    engine.approve_occupied("A-01", "admin")
    engine.request_leaving("alice")
    engine.pay("alice")
    record = engine.approve_leaving("A-01", "admin").record

    assert sql_history.find_by_id(record.id) == record
    assert sql_history.find_by_id("missing") is None


def test_user_block_state_round_trips(sql_users, clock):
    alice = sql_users.find_by_id("alice")
    sql_users.update(alice.model_copy(update={"blocked": True, "blocked_at": clock.now(), "blocked_by": "admin"}))

    stored = sql_users.find_by_id("alice")
    assert stored.blocked is True
    assert stored.blocked_at == clock.now()
    assert stored.blocked_by == "admin"
    with pytest.raises(NotFoundError):
        sql_users.update(User(id="ghost", name="Ghost", email="g@example.com"))
