"""Pure state-machine transitions for a single parking slot.

Each function takes the current state variant and returns the next one, or
raises when the precondition does not hold. Nothing here touches storage;
the engine applies results through a conditional update.
"""

from datetime import datetime
from typing import Optional

from .errors import ConflictError, InvalidStateError, NotFoundError
from .models import (
    Available,
    Leaving,
    Maintenance,
    PaymentStatus,
    RequestStatus,
    Reserved,
    SlotState,
    SlotStatus,
)
from .pricing import arrival_deadline, is_reservation_expired


def reserve(
    state: SlotState,
    booked_by: str,
    vehicle_number: str,
    now: datetime,
    window_minutes: int,
    reservation_qr_code: Optional[str] = None,
) -> Reserved:
    if not isinstance(state, Available):
        raise ConflictError("Slot is not available")
    return Reserved(
        booked_by=booked_by,
        vehicle_number=vehicle_number,
        reservation_time=now,
        arrival_time=arrival_deadline(now, window_minutes),
        reservation_qr_code=reservation_qr_code,
    )


def is_expired(state: SlotState, now: datetime, window_minutes: int) -> bool:
    """
    Check whether a reservation has outlived its arrival window.

    A pending occupied-request stops the clock: the user attested arrival in
    time and only the admin decision is outstanding.
    """
    if not isinstance(state, Reserved):
        return False
    if state.occupied_request_status == RequestStatus.PENDING:
        return False
    return is_reservation_expired(state.reservation_time, now, window_minutes)


def cancel(state: SlotState) -> Available:
    """User cancellation; only a reservation (pending request or not) can be cancelled."""
    if not isinstance(state, Reserved):
        raise ConflictError(
            f"Only reserved slots can be cancelled (slot is {state.status.value})"
        )
    return Available()


def pay(state: SlotState, now: datetime) -> Leaving:
    if not isinstance(state, Leaving):
        raise NotFoundError("No pending payment found")
    if state.payment_status == PaymentStatus.PAID:
        raise ConflictError("Payment already completed")
    return state.model_copy(
        update={"payment_status": PaymentStatus.PAID, "payment_time": now}
    )


def release(state: SlotState) -> Available:
    """Forced recovery to a clean available slot, from any state."""
    return Available()


def enter_maintenance(state: SlotState) -> Maintenance:
    if isinstance(state, Maintenance):
        return state
    if not isinstance(state, Available):
        raise ConflictError(
            f"Slot must be available to enter maintenance (slot is {state.status.value})"
        )
    return Maintenance()


def set_status(state: SlotState, status: SlotStatus) -> SlotState:
    """Admin status override limited to available and maintenance."""
    if status == SlotStatus.AVAILABLE:
        return release(state)
    if status == SlotStatus.MAINTENANCE:
        return enter_maintenance(state)
    raise InvalidStateError(
        f"Invalid status '{status.value}'. Must be: available or maintenance"
    )


def clear_pending_occupied(state: SlotState) -> Reserved:
    """Drop a pending occupied-request so the reservation is plain again."""
    if not isinstance(state, Reserved) or state.occupied_request_status != RequestStatus.PENDING:
        raise InvalidStateError("No pending occupied request found")
    return state.model_copy(update={"occupied_request_status": None})
