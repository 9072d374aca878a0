import pytest

from parking_booking.lifecycle.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from parking_booking.lifecycle.models import SlotStatus, available_document


def finish_session(engine, clock, park, user_id="alice", slot_id="A-01"):
    park(user_id, slot_id)
    clock.advance(hours=1)
    engine.request_leaving(user_id)
    engine.pay(user_id)
    return engine.approve_leaving(slot_id, "admin").record


def test_register_user_then_reserve(engine):
    carol = engine.register_user("carol", "Carol", "carol@example.com", "KA-03-3333", "admin")
    assert carol.is_admin is False
    assert engine.reserve("carol", "A-02", "KA-03-3333").state.booked_by == "carol"


def test_register_existing_user_conflicts(engine):
    with pytest.raises(ConflictError):
        engine.register_user("alice", "Alice Again", "a2@example.com", None, "admin")


def test_users_page_lists_regular_users_only(engine):
    page = engine.users_page()
    assert [u.id for u in page.users] == ["alice", "bob"]
    assert page.total == 2


def test_users_page_search_is_case_insensitive(engine):
    assert [u.id for u in engine.users_page(search="ALI").users] == ["alice"]
    assert [u.id for u in engine.users_page(search="bob@").users] == ["bob"]
    assert engine.users_page(search="nobody").total == 0


def test_users_page_paginates(engine):
    engine.register_user("carol", "Carol", "carol@example.com", None, "admin")
    page = engine.users_page(page=2, limit=2)
    assert [u.id for u in page.users] == ["carol"]
    assert page.total == 3


def test_users_page_filters_by_block_state(engine):
    engine.block_user("bob", "admin")
    assert [u.id for u in engine.users_page(blocked=True).users] == ["bob"]
    assert [u.id for u in engine.users_page(blocked=False).users] == ["alice"]


def test_user_details_include_booking_and_recent_parkings(engine, clock, park):
    first = finish_session(engine, clock, park)
    engine.reserve("alice", "A-02", "KA-01-1111")

    details = engine.user_details("alice")
    assert details.user.id == "alice"
    assert details.booking.id == "A-02"
    assert details.recent_parkings == [first]


def test_user_details_unknown_user(engine):
    with pytest.raises(NotFoundError):
        engine.user_details("mallory")


def test_block_releases_reserved_slot(engine, store, clock):
    engine.reserve("alice", "A-01", "KA-01-1111")
    result = engine.block_user("alice", "admin")

    assert result.user.blocked is True
    assert result.user.blocked_by == "admin"
    assert result.user.blocked_at == clock.now()
    assert result.released.id == "A-01"
    assert result.released.status == SlotStatus.AVAILABLE
    assert store.find_by_key("A-01") == available_document("A-01")


def test_block_releases_slot_with_pending_leaving(engine, store, history, clock, park):
    park()
    clock.advance(hours=1)
    engine.request_leaving("alice")

    result = engine.block_user("alice", "admin")
    assert result.released.id == "A-01"
    assert store.find_by_key("A-01") == available_document("A-01")
    assert history.count() == 0


def test_block_without_booking_releases_nothing(engine):
    assert engine.block_user("bob", "admin").released is None


def test_blocked_user_cannot_reserve(engine):
    engine.block_user("alice", "admin")
    with pytest.raises(ConflictError):
        engine.reserve("alice", "A-01", "KA-01-1111")
    assert engine.get_slot("A-01").status == SlotStatus.AVAILABLE


def test_admin_cannot_be_blocked(engine):
    with pytest.raises(InvalidStateError):
        engine.block_user("admin", "admin")


def test_block_twice_is_invalid(engine):
    engine.block_user("alice", "admin")
    with pytest.raises(InvalidStateError):
        engine.block_user("alice", "admin")


def test_unblock_restores_reservations(engine):
    engine.block_user("alice", "admin")
    user = engine.unblock_user("alice", "admin")
    assert user.blocked is False
    assert user.blocked_at is None
    assert user.blocked_by is None
    assert engine.reserve("alice", "A-01", "KA-01-1111").state.booked_by == "alice"


def test_unblock_user_who_is_not_blocked(engine):
    with pytest.raises(InvalidStateError):
        engine.unblock_user("alice", "admin")
