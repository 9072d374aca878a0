"""FastAPI route definitions."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from ..lifecycle.engine import LifecycleEngine
from ..lifecycle.errors import (
    ArchivalError,
    ConflictError,
    ExpiredReservationError,
    InvalidStateError,
    LifecycleError,
    NotFoundError,
    PaymentNotCompleteError,
)
from ..lifecycle.gateway import RequestKind
from ..lifecycle.models import User
from ..metrics import get_metrics
from .schemas import (
    BookingResponse,
    CompletedParkingResponse,
    CompletionResponse,
    HealthResponse,
    HistoryResponse,
    LeavingResponse,
    ParkingCounts,
    QrResponse,
    RequestCounts,
    ReserveRequest,
    ResetResponse,
    SlotActionResponse,
    SlotResponse,
    StatsResponse,
    StatusUpdateRequest,
    UserActionResponse,
    UserCreateRequest,
    UserDetailResponse,
    UserListResponse,
    UserResponse,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NotFoundError: 404,
    ConflictError: 409,
    InvalidStateError: 400,
    ExpiredReservationError: 400,
    PaymentNotCompleteError: 400,
    ArchivalError: 503,
}


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    """Report a rejected lifecycle action to the client."""
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        400,
    )
    body = {"error": exc.detail}
    if isinstance(exc, ExpiredReservationError):
        body["expired"] = True
    return JSONResponse(status_code=status_code, content=body)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_engine(request: Request) -> LifecycleEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return engine


def current_user(
    x_user_id: str = Header(..., description="Caller identity set by the gateway"),
    engine: LifecycleEngine = Depends(get_engine),
) -> User:
    try:
        return engine.users.find_by_id(x_user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="Unknown user")


def current_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


router = APIRouter()
parking_router = APIRouter(prefix="/parking", tags=["parking"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Returns basic health information about the service.
    """
    started_at: datetime = getattr(request.app.state, "started_at", datetime.now())
    return HealthResponse(
        status="healthy" if getattr(request.app.state, "engine", None) else "starting",
        uptime_seconds=(datetime.now() - started_at).total_seconds(),
    )


@router.get("/metrics")
def prometheus_metrics(engine: LifecycleEngine = Depends(get_engine)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format including:
    - parking_slot_transitions_total: Applied transitions by action
    - parking_slot_conflicts_total: Rejected actions by action
    - parking_reservation_expirations_total: Lazily expired reservations
    - parking_completed_sessions_total / parking_session_revenue_total
    - parking_session_duration_minutes: Histogram of parked durations
    - parking_slots: Gauge of slots per status
    """
    engine.stats()
    return Response(
        content=get_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# ----------------------------------------------------------------------
# User routes
# ----------------------------------------------------------------------


@parking_router.get("/slots", response_model=list[SlotResponse])
def list_slots(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[SlotResponse]:
    """Available slots plus the caller's own reservation."""
    return [SlotResponse.from_slot(s) for s in engine.list_slots(user.id)]


@parking_router.get("/booking", response_model=BookingResponse)
def current_booking(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> BookingResponse:
    lookup = engine.current_booking(user.id)
    return BookingResponse(
        booking=SlotResponse.from_slot(lookup.slot) if lookup.slot else None,
        expired=lookup.expired,
    )


@parking_router.post("/reserve", response_model=SlotActionResponse)
def reserve_slot(
    body: ReserveRequest,
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    """
    Reserve a slot.

    The arrival deadline is set by the server to one reservation window
    after now.
    """
    slot = engine.reserve(user.id, body.slot_id, body.vehicle_number)
    return SlotActionResponse(message="Slot reserved successfully", slot=SlotResponse.from_slot(slot))


@parking_router.post("/request-occupied", response_model=SlotActionResponse)
def request_occupied(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.request_occupied(user.id)
    return SlotActionResponse(
        message="Occupied request submitted. Waiting for admin approval.",
        slot=SlotResponse.from_slot(slot),
    )


@parking_router.post("/request-leaving", response_model=LeavingResponse)
def request_leaving(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> LeavingResponse:
    quote = engine.request_leaving(user.id)
    return LeavingResponse(
        message="Leaving request submitted. Please make payment.",
        slot=SlotResponse.from_slot(quote.slot),
        duration=quote.duration,
        cost=quote.cost,
    )


@parking_router.post("/payment", response_model=SlotActionResponse)
def make_payment(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.pay(user.id)
    return SlotActionResponse(
        message="Payment successful. Waiting for admin approval.",
        slot=SlotResponse.from_slot(slot),
    )


@parking_router.post("/cancel", response_model=SlotActionResponse)
def cancel_reservation(
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.cancel(user.id)
    return SlotActionResponse(
        message="Reservation cancelled successfully", slot=SlotResponse.from_slot(slot)
    )


@parking_router.get("/history", response_model=HistoryResponse)
def parking_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(current_user),
    engine: LifecycleEngine = Depends(get_engine),
) -> HistoryResponse:
    return HistoryResponse.from_page(engine.history(user.id, page=page, limit=limit))


# ----------------------------------------------------------------------
# Admin routes
# ----------------------------------------------------------------------


@admin_router.get("/stats", response_model=StatsResponse)
def dashboard_stats(
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> StatsResponse:
    stats = engine.stats()
    return StatsResponse(
        parking=ParkingCounts(
            total_slots=stats.total,
            available_slots=stats.counts["available"],
            reserved_slots=stats.counts["reserved"],
            occupied_slots=stats.counts["occupied"],
            leaving_slots=stats.counts["leaving"],
            maintenance_slots=stats.counts["maintenance"],
        ),
        requests=RequestCounts(
            pending_occupied_requests=stats.pending_occupied_requests,
            pending_leaving_requests=stats.pending_leaving_requests,
        ),
    )


@admin_router.get("/slots", response_model=list[SlotResponse])
def all_slots(
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[SlotResponse]:
    return [SlotResponse.from_slot(s) for s in engine.all_slots()]


@admin_router.get("/slots/{slot_id}", response_model=SlotResponse)
def get_slot(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotResponse:
    return SlotResponse.from_slot(engine.get_slot(slot_id))


@admin_router.patch("/slots/{slot_id}/status", response_model=SlotActionResponse)
def update_slot_status(
    slot_id: str,
    body: StatusUpdateRequest,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.set_status(slot_id, body.status, admin.id)
    return SlotActionResponse(
        message=f"Slot {slot_id} status updated to {body.status.value}",
        slot=SlotResponse.from_slot(slot),
    )


@admin_router.post("/slots/{slot_id}/release", response_model=SlotActionResponse)
def release_slot(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.release(slot_id, admin.id)
    return SlotActionResponse(message="Slot released successfully", slot=SlotResponse.from_slot(slot))


@admin_router.get("/qr/{slot_id}", response_model=QrResponse)
def slot_qr(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> QrResponse:
    return QrResponse(slot_id=slot_id, qr_code=engine.slot_qr(slot_id))


@admin_router.get("/requests", response_model=list[SlotResponse])
def pending_requests(
    type: Optional[RequestKind] = Query(None),
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> list[SlotResponse]:
    """Slots with a pending occupied and/or leaving request."""
    return [SlotResponse.from_slot(s) for s in engine.pending_requests(type)]


@admin_router.post("/approve-occupied/{slot_id}", response_model=SlotActionResponse)
def approve_occupied(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.approve_occupied(slot_id, admin.id)
    return SlotActionResponse(message="Occupied request approved", slot=SlotResponse.from_slot(slot))


@admin_router.post("/reject-occupied/{slot_id}", response_model=SlotActionResponse)
def reject_occupied(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.reject_occupied(slot_id, admin.id)
    return SlotActionResponse(message="Occupied request rejected", slot=SlotResponse.from_slot(slot))


@admin_router.post("/mark-payment/{slot_id}", response_model=SlotActionResponse)
def mark_payment(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> SlotActionResponse:
    slot = engine.mark_payment(slot_id, admin.id)
    return SlotActionResponse(message="Payment marked as received", slot=SlotResponse.from_slot(slot))


@admin_router.post("/confirm-payment/{slot_id}", response_model=CompletionResponse)
def confirm_payment(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> CompletionResponse:
    completion = engine.confirm_payment(slot_id, admin.id)
    return CompletionResponse(
        message="Payment confirmed and leaving request completed successfully",
        completed_parking=CompletedParkingResponse.from_record(completion.record),
        slot=SlotResponse.from_slot(completion.slot),
    )


@admin_router.post("/approve-leaving/{slot_id}", response_model=CompletionResponse)
def approve_leaving(
    slot_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> CompletionResponse:
    completion = engine.approve_leaving(slot_id, admin.id)
    return CompletionResponse(
        message="Leaving request approved and transaction completed",
        completed_parking=CompletedParkingResponse.from_record(completion.record),
        slot=SlotResponse.from_slot(completion.slot),
    )


@admin_router.post("/reset-all-requests", response_model=ResetResponse)
def reset_all_requests(
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> ResetResponse:
    count = engine.reset_pending_requests(admin.id)
    if count == 0:
        return ResetResponse(message="No pending requests to reset", reset_count=0)
    return ResetResponse(message=f"Successfully reset {count} pending requests", reset_count=count)


@admin_router.get("/completed-parkings", response_model=HistoryResponse)
def completed_parkings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = Query(None),
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> HistoryResponse:
    return HistoryResponse.from_page(
        engine.completed_parkings(user_id=user_id, page=page, limit=limit)
    )


@admin_router.get("/users", response_model=UserListResponse)
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None),
    blocked: Optional[bool] = Query(None),
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> UserListResponse:
    """Regular users, searchable by name or email."""
    return UserListResponse.from_page(
        engine.users_page(search=search, blocked=blocked, page=page, limit=limit)
    )


@admin_router.post("/users", response_model=UserResponse, status_code=201)
def register_user(
    body: UserCreateRequest,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> UserResponse:
    user = engine.register_user(body.id, body.name, body.email, body.vehicle_number, admin.id)
    return UserResponse.from_user(user)


@admin_router.get("/users/{user_id}", response_model=UserDetailResponse)
def get_user(
    user_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> UserDetailResponse:
    return UserDetailResponse.from_details(engine.user_details(user_id))


@admin_router.post("/users/{user_id}/block", response_model=UserActionResponse)
def block_user(
    user_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> UserActionResponse:
    """Block a user; any slot they hold is released."""
    result = engine.block_user(user_id, admin.id)
    return UserActionResponse(
        message="User blocked successfully",
        user=UserResponse.from_user(result.user),
        released_slot=SlotResponse.from_slot(result.released) if result.released else None,
    )


@admin_router.post("/users/{user_id}/unblock", response_model=UserActionResponse)
def unblock_user(
    user_id: str,
    admin: User = Depends(current_admin),
    engine: LifecycleEngine = Depends(get_engine),
) -> UserActionResponse:
    user = engine.unblock_user(user_id, admin.id)
    return UserActionResponse(message="User unblocked successfully", user=UserResponse.from_user(user))


router.include_router(parking_router)
router.include_router(admin_router)
