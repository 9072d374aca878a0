from datetime import timedelta

import pytest

from parking_booking.lifecycle import gateway
from parking_booking.lifecycle.errors import (
    ConflictError,
    ExpiredReservationError,
    InvalidStateError,
    NotFoundError,
    PaymentNotCompleteError,
)
from parking_booking.lifecycle.gateway import RequestKind
from parking_booking.lifecycle.models import (
    ACTIVE_STATUSES,
    Occupied,
    ParkingSlot,
    PaymentStatus,
    RequestStatus,
    SlotStatus,
    available_document,
)


def assert_slot_invariants(engine):
    holders = []
    for slot in engine.store.find():
        if slot["status"] == SlotStatus.AVAILABLE.value:
            assert slot["booked_by"] is None
            assert slot["vehicle_number"] is None
        elif slot["status"] in [s.value for s in ACTIVE_STATUSES]:
            assert slot["booked_by"] is not None
            holders.append(slot["booked_by"])
    assert len(holders) == len(set(holders))


def test_full_session_round_trip(engine, clock, history, park):
    park()
    clock.advance(hours=2)
    quote = engine.request_leaving("alice")
    engine.pay("alice")
    clock.advance(minutes=5)
    completion = engine.confirm_payment("A-01", "admin")

    assert completion.slot.to_document() == available_document("A-01")
    assert history.count() == 1
    record = history.find()[0]
    assert record.slot_id == "A-01"
    assert record.user_id == "alice"
    assert record.cost == quote.cost == 100
    assert record.approved_by == "admin"
    assert record.duration.total_minutes == 125
    assert_slot_invariants(engine)


def test_reserve_records_booking_and_qr_payload(engine, clock):
    slot = engine.reserve("alice", "A-02", "KA-01-1111")
    assert slot.status == SlotStatus.RESERVED
    assert slot.booked_by == "alice"
    assert slot.state.arrival_time == clock.now() + timedelta(hours=1)
    assert '"type":"reservation"' in slot.state.reservation_qr_code
    assert '"slotId":"A-02"' in slot.state.reservation_qr_code


def test_reserve_unknown_slot(engine):
    with pytest.raises(NotFoundError):
        engine.reserve("alice", "Z-99", "X")


def test_reserve_unknown_user(engine):
    with pytest.raises(NotFoundError):
        engine.reserve("mallory", "A-01", "X")


def test_user_holds_at_most_one_slot(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    with pytest.raises(ConflictError):
        engine.reserve("alice", "A-02", "KA-01-1111")
    assert_slot_invariants(engine)


def test_reserving_taken_slot_conflicts(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    with pytest.raises(ConflictError):
        engine.reserve("bob", "A-01", "KA-02-2222")


def test_maintenance_slot_cannot_be_reserved(engine):
    engine.set_status("A-03", SlotStatus.MAINTENANCE, "admin")
    with pytest.raises(ConflictError):
        engine.reserve("alice", "A-03", "X")


def test_reservation_read_at_59_minutes_is_untouched(engine, clock):
    reserved = engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=59)
    lookup = engine.current_booking("alice")
    assert lookup.expired is False
    assert lookup.slot == reserved


def test_reservation_read_at_61_minutes_expires(engine, clock):
    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=61)
    lookup = engine.current_booking("alice")
    assert lookup.expired is True
    assert lookup.slot is None
    assert engine.store.find_by_key("A-01") == available_document("A-01")


def test_expired_reservation_rejects_occupied_request(engine, clock):
    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=61)
    with pytest.raises(ExpiredReservationError) as excinfo:
        engine.request_occupied("alice")
    assert excinfo.value.expired is True
    assert engine.get_slot("A-01").status == SlotStatus.AVAILABLE


def test_expired_slot_is_listed_as_available(engine, clock):
    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(hours=2)
    visible = {slot.id: slot.status for slot in engine.list_slots("bob")}
    assert visible == {sid: SlotStatus.AVAILABLE for sid in ("A-01", "A-02", "A-03")}


def test_list_slots_hides_other_users_reservations(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    assert [s.id for s in engine.list_slots("bob")] == ["A-02", "A-03"]
    assert [s.id for s in engine.list_slots("alice")] == ["A-01", "A-02", "A-03"]


def test_pending_request_survives_window(engine, clock):
    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=50)
    engine.request_occupied("alice")
    clock.advance(minutes=30)
    assert engine.current_booking("alice").expired is False
    slot = engine.approve_occupied("A-01", "admin")
    assert isinstance(slot.state, Occupied)
    assert slot.state.parked_time == clock.now()
    assert '"approvedBy":"admin"' in slot.state.occupied_qr_code


def test_reject_then_request_again(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.request_occupied("alice")
    rejected = engine.reject_occupied("A-01", "admin")
    assert rejected.status == SlotStatus.RESERVED
    assert rejected.state.occupied_request_status == RequestStatus.REJECTED
    again = engine.request_occupied("alice")
    assert again.state.occupied_request_status == RequestStatus.PENDING


def test_duplicate_occupied_request_is_invalid(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.request_occupied("alice")
    with pytest.raises(InvalidStateError):
        engine.request_occupied("alice")


def test_approve_without_request_is_invalid(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    with pytest.raises(InvalidStateError):
        engine.approve_occupied("A-01", "admin")


def test_leaving_cost_example(engine, clock, park):
    park()
    clock.advance(hours=2, minutes=30)
    quote = engine.request_leaving("alice")
    assert quote.cost == 125
    assert quote.duration.hours == 2
    assert quote.duration.minutes == 30
    assert quote.slot.status == SlotStatus.LEAVING
    assert quote.slot.state.leaving_request_time == clock.now()


def test_cost_is_frozen_at_leaving_request(engine, clock, history, park):
    park()
    clock.advance(hours=1)
    engine.request_leaving("alice")
    engine.pay("alice")
    clock.advance(hours=3)
    completion = engine.approve_leaving("A-01", "admin")
    assert completion.record.cost == 50
    assert completion.record.duration.hours == 4


def test_second_leaving_request_is_invalid(engine, clock, park):
    park()
    engine.request_leaving("alice")
    with pytest.raises(InvalidStateError):
        engine.request_leaving("alice")


def test_leaving_without_parking(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    with pytest.raises(NotFoundError):
        engine.request_leaving("alice")


def test_approve_leaving_before_payment(engine, clock, history, park):
    park()
    clock.advance(hours=1)
    engine.request_leaving("alice")
    before = engine.store.find_by_key("A-01")

    with pytest.raises(PaymentNotCompleteError):
        engine.approve_leaving("A-01", "admin")

    assert engine.store.find_by_key("A-01") == before
    assert before["status"] == SlotStatus.LEAVING.value
    assert history.count() == 0


def test_pay_without_leaving_request(engine, park):
    park()
    with pytest.raises(NotFoundError):
        engine.pay("alice")


def test_pay_twice_conflicts(engine, park):
    park()
    engine.request_leaving("alice")
    engine.pay("alice")
    with pytest.raises(ConflictError):
        engine.pay("alice")


def test_admin_marks_offline_payment(engine, clock, history, park):
    park()
    engine.request_leaving("alice")
    slot = engine.mark_payment("A-01", "admin")
    assert slot.state.payment_status == PaymentStatus.PAID
    assert slot.state.payment_time == clock.now()
    with pytest.raises(ConflictError):
        engine.mark_payment("A-01", "admin")
    engine.confirm_payment("A-01", "admin")
    assert history.count() == 1


def test_completion_twice_is_invalid(engine, history, park):
    park()
    engine.request_leaving("alice")
    engine.pay("alice")
    engine.confirm_payment("A-01", "admin")
    with pytest.raises(InvalidStateError):
        engine.confirm_payment("A-01", "admin")
    assert history.count() == 1


def test_cancel_reservation(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    slot = engine.cancel("alice")
    assert slot.to_document() == available_document("A-01")


def test_cancel_with_pending_occupied_request(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.request_occupied("alice")
    assert engine.cancel("alice").status == SlotStatus.AVAILABLE


def test_cancel_twice_is_not_found(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.cancel("alice")
    with pytest.raises(NotFoundError):
        engine.cancel("alice")
    assert_slot_invariants(engine)


def test_cancel_after_parking_is_not_found(engine, park):
    park()
    with pytest.raises(NotFoundError):
        engine.cancel("alice")


def test_release_resets_any_state(engine, park):
    park()
    slot = engine.release("A-01", "admin")
    assert slot.to_document() == available_document("A-01")
    assert engine.current_booking("alice").slot is None


def test_release_unknown_slot(engine):
    with pytest.raises(NotFoundError):
        engine.release("Q-01", "admin")


def test_pending_requests_by_kind(engine, clock, park):
    park("alice", "A-01")
    engine.request_leaving("alice")
    engine.reserve("bob", "A-02", "KA-02-2222")
    engine.request_occupied("bob")

    assert [s.id for s in engine.pending_requests()] == ["A-01", "A-02"]
    assert [s.id for s in engine.pending_requests(RequestKind.OCCUPIED)] == ["A-02"]
    assert [s.id for s in engine.pending_requests(RequestKind.LEAVING)] == ["A-01"]


def test_reset_pending_requests_keeps_reservations(engine):
    engine.reserve("alice", "A-01", "KA-01-1111")
    engine.request_occupied("alice")
    engine.reserve("bob", "A-02", "KA-02-2222")

    assert engine.reset_pending_requests("admin") == 1
    slot = engine.get_slot("A-01")
    assert slot.status == SlotStatus.RESERVED
    assert slot.state.occupied_request_status is None
    assert engine.reset_pending_requests("admin") == 0


def test_stats(engine, park):
    park("alice", "A-01")
    engine.request_leaving("alice")
    engine.pay("alice")
    engine.reserve("bob", "A-02", "KA-02-2222")
    engine.request_occupied("bob")

    stats = engine.stats()
    assert stats.total == 3
    assert stats.counts["leaving"] == 1
    assert stats.counts["reserved"] == 1
    assert stats.counts["available"] == 1
    assert stats.pending_occupied_requests == 1
    assert stats.pending_leaving_requests == 1


def test_history_is_paginated_newest_first(engine, clock, park):
    for _ in range(3):
        park("alice", "A-01")
        clock.advance(hours=1)
        engine.request_leaving("alice")
        engine.pay("alice")
        engine.approve_leaving("A-01", "admin")
        clock.advance(minutes=1)

    first = engine.history("alice", page=1, limit=2)
    second = engine.history("alice", page=2, limit=2)
    assert first.total == 3
    assert len(first.records) == 2
    assert len(second.records) == 1
    assert first.records[0].completed_time > first.records[1].completed_time > second.records[0].completed_time
    assert engine.history("bob").total == 0
    assert engine.completed_parkings().total == 3


def test_slot_qr(engine):
    assert engine.slot_qr("A-02") == "parking_slot:A-02"


def test_stale_snapshot_cannot_overwrite_newer_reservation(engine, clock, store):
    engine.reserve("alice", "A-01", "KA-01-1111")
    clock.advance(minutes=61)
    stale = ParkingSlot.from_document(store.find_by_key("A-01"))

    fresh = engine.reserve("alice", "A-01", "KA-01-1111")
    assert fresh.state.reservation_time == clock.now()

    with pytest.raises(ConflictError):
        store.conditional_update("A-01", stale.guard(), available_document("A-01"))
    assert engine.get_slot("A-01") == fresh


def test_abandoned_completion_claim_can_be_taken_over(engine, clock, history, store, park):
    park()
    clock.advance(hours=1)
    engine.request_leaving("alice")
    engine.pay("alice")

    # Claim written, then the completing process died before archiving
    paid = engine.get_slot("A-01")
    claimed = gateway.claim_leaving(paid.state, clock.now())
    store.conditional_update("A-01", paid.guard(), paid.with_state(claimed).to_document())

    with pytest.raises(ConflictError):
        engine.approve_leaving("A-01", "admin")

    clock.advance(minutes=6)
    completion = engine.approve_leaving("A-01", "admin")
    assert completion.slot.status == SlotStatus.AVAILABLE
    assert history.count() == 1


def test_completion_retry_after_archiving_does_not_duplicate(engine, clock, history, store, park):
    park()
    clock.advance(hours=1)
    engine.request_leaving("alice")
    engine.pay("alice")

    # Claimed and archived, then the process died before freeing the slot
    paid = engine.get_slot("A-01")
    claimed = gateway.claim_leaving(paid.state, clock.now())
    store.conditional_update("A-01", paid.guard(), paid.with_state(claimed).to_document())
    first = engine.archiver.archive("A-01", claimed, "admin", clock.now())

    clock.advance(minutes=10)
    completion = engine.confirm_payment("A-01", "admin")
    assert completion.record == first
    assert history.count() == 1
    assert store.find_by_key("A-01") == available_document("A-01")
