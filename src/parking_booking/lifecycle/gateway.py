"""Request/approval gateway.

Two transitions move a slot toward real-world billing and need an admin to
confirm what the user attests: arrival (occupied-request) and departure
(leaving-request). Users submit; admins decide.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .errors import ConflictError, InvalidStateError, NotFoundError, PaymentNotCompleteError
from .models import (
    Available,
    Leaving,
    Occupied,
    PaymentStatus,
    RequestStatus,
    Reserved,
    SlotState,
)
from .pricing import compute_cost

DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=5)


class RequestKind(str, Enum):
    OCCUPIED = "occupied"
    LEAVING = "leaving"


class Outcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


def submit_request(
    state: SlotState,
    kind: RequestKind,
    now: datetime,
    price_per_hour: float = 0,
) -> SlotState:
    """
    Mark a request of the given kind as pending.

    Submitting a leaving-request also freezes the session cost at `now`
    and opens the payment.

    Raises:
        InvalidStateError: A request of this kind is already pending
        NotFoundError: The slot is not in the request's pre-state
    """
    if kind == RequestKind.OCCUPIED:
        if not isinstance(state, Reserved):
            raise NotFoundError("No active reservation found")
        if state.occupied_request_status == RequestStatus.PENDING:
            raise InvalidStateError("Occupied request already pending")
        return state.model_copy(
            update={"occupied_request_status": RequestStatus.PENDING}
        )

    if isinstance(state, Leaving):
        raise InvalidStateError("Leaving request already pending")
    if not isinstance(state, Occupied):
        raise NotFoundError("No active parking found")
    return Leaving(
        booked_by=state.booked_by,
        vehicle_number=state.vehicle_number,
        reservation_time=state.reservation_time,
        arrival_time=state.arrival_time,
        parked_time=state.parked_time,
        reservation_qr_code=state.reservation_qr_code,
        occupied_qr_code=state.occupied_qr_code,
        leaving_request_time=now,
        cost=compute_cost(state.parked_time, now, price_per_hour),
        leaving_request_status=RequestStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )


def decide(
    state: SlotState,
    kind: RequestKind,
    outcome: Outcome,
    now: datetime,
    occupied_qr_code: Optional[str] = None,
) -> SlotState:
    """
    Consume a pending request.

    Approving an occupied-request parks the vehicle; rejecting it leaves the
    reservation usable. Approving a leaving-request frees the slot (the
    caller archives the session first). Leaving-requests cannot be rejected.
    """
    if kind == RequestKind.OCCUPIED:
        if not isinstance(state, Reserved) or state.occupied_request_status != RequestStatus.PENDING:
            raise InvalidStateError("No pending occupied request found")
        if outcome == Outcome.REJECT:
            return state.model_copy(
                update={"occupied_request_status": RequestStatus.REJECTED}
            )
        return Occupied(
            booked_by=state.booked_by,
            vehicle_number=state.vehicle_number,
            reservation_time=state.reservation_time,
            arrival_time=state.arrival_time,
            reservation_qr_code=state.reservation_qr_code,
            parked_time=now,
            occupied_qr_code=occupied_qr_code,
            occupied_request_status=RequestStatus.APPROVED,
        )

    if outcome == Outcome.REJECT:
        raise InvalidStateError("Leaving requests cannot be rejected")
    return finish_leaving(claim_leaving(state, now))


def claim_leaving(
    state: SlotState,
    now: datetime,
    claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
) -> Leaving:
    """
    Reserve a paid leaving session for completion by one admin.

    The claim sets the leaving request to approved and stamps the claim
    time; the session stays `leaving` until it has been archived. A claim
    older than `claim_timeout` was abandoned mid-completion and may be
    taken over.

    Raises:
        InvalidStateError: No pending leaving request
        PaymentNotCompleteError: Session not paid yet
        ConflictError: Another completion is in progress
    """
    if not isinstance(state, Leaving):
        raise InvalidStateError("No pending leaving request found")
    if state.leaving_request_status == RequestStatus.APPROVED:
        claimed_at = state.completion_claimed_at
        if claimed_at is not None and now - claimed_at < claim_timeout:
            raise ConflictError("Completion already in progress")
    elif state.leaving_request_status != RequestStatus.PENDING:
        raise InvalidStateError("No pending leaving request found")
    if state.payment_status != PaymentStatus.PAID:
        raise PaymentNotCompleteError("Payment not completed")
    return state.model_copy(
        update={
            "leaving_request_status": RequestStatus.APPROVED,
            "completion_claimed_at": now,
        }
    )


def unclaim_leaving(state: Leaving) -> Leaving:
    return state.model_copy(
        update={
            "leaving_request_status": RequestStatus.PENDING,
            "completion_claimed_at": None,
        }
    )


def finish_leaving(state: SlotState) -> Available:
    if not isinstance(state, Leaving) or state.leaving_request_status != RequestStatus.APPROVED:
        raise InvalidStateError("Leaving request has not been approved")
    return Available()


def is_pending(state: SlotState, kind: Optional[RequestKind] = None) -> bool:
    """Whether the slot carries a pending request of the given kind (or any kind)."""
    occupied = isinstance(state, Reserved) and state.occupied_request_status == RequestStatus.PENDING
    leaving = isinstance(state, Leaving) and state.leaving_request_status == RequestStatus.PENDING
    if kind == RequestKind.OCCUPIED:
        return occupied
    if kind == RequestKind.LEAVING:
        return leaving
    return occupied or leaving
