"""API request and response schemas."""

import math
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..lifecycle.engine import HistoryPage, UserDetails, UserPage
from ..lifecycle.models import (
    CompletedParking,
    Duration,
    ParkingSlot,
    PaymentStatus,
    RequestStatus,
    SlotStatus,
    User,
    UserRole,
)


class ReserveRequest(BaseModel):
    """Body of a reservation request."""

    slot_id: str = Field(..., min_length=1)
    vehicle_number: str = Field(..., min_length=1, max_length=32)


class StatusUpdateRequest(BaseModel):
    status: SlotStatus


class SlotResponse(BaseModel):
    """Flat view of a parking slot."""

    id: str
    status: SlotStatus
    vehicle_number: Optional[str] = None
    booked_by: Optional[str] = None
    reservation_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    parked_time: Optional[datetime] = None
    leaving_request_time: Optional[datetime] = None
    occupied_request_status: Optional[RequestStatus] = None
    leaving_request_status: Optional[RequestStatus] = None
    cost: int = 0
    payment_status: Optional[PaymentStatus] = None
    payment_time: Optional[datetime] = None
    reservation_qr_code: Optional[str] = None
    occupied_qr_code: Optional[str] = None
    qr_code: str

    @classmethod
    def from_slot(cls, slot: ParkingSlot) -> "SlotResponse":
        return cls(**slot.to_document())


class SlotActionResponse(BaseModel):
    message: str
    slot: SlotResponse


class BookingResponse(BaseModel):
    """Current booking of the caller; `expired` is set when the read released it."""

    booking: Optional[SlotResponse] = None
    expired: bool = False


class LeavingResponse(BaseModel):
    message: str
    slot: SlotResponse
    duration: Duration
    cost: int


class CompletedParkingResponse(BaseModel):
    """Archived session with display helpers."""

    id: str
    user_id: str
    slot_id: str
    vehicle_number: str
    reservation_time: datetime
    arrival_time: datetime
    parked_time: datetime
    leaving_request_time: datetime
    completed_time: datetime
    duration: Duration
    cost: int
    payment_status: PaymentStatus
    payment_time: Optional[datetime] = None
    approved_by: str
    formatted_duration: str

    @classmethod
    def from_record(cls, record: CompletedParking) -> "CompletedParkingResponse":
        return cls(
            **record.model_dump(),
            formatted_duration=f"{record.duration.hours}h {record.duration.minutes}m",
        )


class CompletionResponse(BaseModel):
    message: str
    completed_parking: CompletedParkingResponse
    slot: SlotResponse


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int, returned: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
            has_next_page=(page - 1) * limit + returned < total,
            has_prev_page=page > 1,
        )


class HistoryResponse(BaseModel):
    records: list[CompletedParkingResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: HistoryPage) -> "HistoryResponse":
        return cls(
            records=[CompletedParkingResponse.from_record(r) for r in page.records],
            pagination=Pagination.build(page.page, page.limit, page.total, len(page.records)),
        )


class ParkingCounts(BaseModel):
    total_slots: int
    available_slots: int
    reserved_slots: int
    occupied_slots: int
    leaving_slots: int
    maintenance_slots: int


class RequestCounts(BaseModel):
    pending_occupied_requests: int
    pending_leaving_requests: int


class StatsResponse(BaseModel):
    """Response schema for the admin dashboard."""

    parking: ParkingCounts
    requests: RequestCounts


class ResetResponse(BaseModel):
    message: str
    reset_count: int


class QrResponse(BaseModel):
    slot_id: str
    qr_code: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    uptime_seconds: float


class UserCreateRequest(BaseModel):
    """Body of an admin user-provisioning request."""

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., min_length=3, max_length=256)
    vehicle_number: Optional[str] = Field(None, max_length=32)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    vehicle_number: Optional[str] = None
    role: UserRole
    blocked: bool = False
    blocked_at: Optional[datetime] = None
    blocked_by: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.model_dump())


class UserListResponse(BaseModel):
    users: list[UserResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: UserPage) -> "UserListResponse":
        return cls(
            users=[UserResponse.from_user(u) for u in page.users],
            pagination=Pagination.build(page.page, page.limit, page.total, len(page.users)),
        )


class UserDetailResponse(BaseModel):
    """A user with their current booking and recent completed parkings."""

    user: UserResponse
    current_booking: Optional[SlotResponse] = None
    recent_parkings: list[CompletedParkingResponse]

    @classmethod
    def from_details(cls, details: UserDetails) -> "UserDetailResponse":
        return cls(
            user=UserResponse.from_user(details.user),
            current_booking=SlotResponse.from_slot(details.booking) if details.booking else None,
            recent_parkings=[CompletedParkingResponse.from_record(r) for r in details.recent_parkings],
        )


class UserActionResponse(BaseModel):
    message: str
    user: UserResponse
    released_slot: Optional[SlotResponse] = None
