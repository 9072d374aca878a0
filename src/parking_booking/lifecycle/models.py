"""Data models for parking slot lifecycle state."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class SlotStatus(str, Enum):
    """Status of a parking slot."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    LEAVING = "leaving"
    MAINTENANCE = "maintenance"


class RequestStatus(str, Enum):
    """Status of an admin-approval gate."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    """Payment state of a leaving session."""

    PENDING = "pending"
    PAID = "paid"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


ACTIVE_STATUSES = (SlotStatus.RESERVED, SlotStatus.OCCUPIED, SlotStatus.LEAVING)


class Available(BaseModel):
    """Free slot with no booking attached."""

    status: Literal[SlotStatus.AVAILABLE] = SlotStatus.AVAILABLE


class Maintenance(BaseModel):
    """Admin-only side state; cannot be booked."""

    status: Literal[SlotStatus.MAINTENANCE] = SlotStatus.MAINTENANCE


class Reserved(BaseModel):
    """Time-boxed hold before the vehicle's arrival is confirmed."""

    status: Literal[SlotStatus.RESERVED] = SlotStatus.RESERVED
    booked_by: str
    vehicle_number: str
    reservation_time: datetime
    arrival_time: datetime
    reservation_qr_code: Optional[str] = None
    occupied_request_status: Optional[RequestStatus] = None


class Occupied(BaseModel):
    """Vehicle parked, arrival approved by an admin."""

    status: Literal[SlotStatus.OCCUPIED] = SlotStatus.OCCUPIED
    booked_by: str
    vehicle_number: str
    reservation_time: datetime
    arrival_time: datetime
    parked_time: datetime
    reservation_qr_code: Optional[str] = None
    occupied_qr_code: Optional[str] = None
    occupied_request_status: RequestStatus = RequestStatus.APPROVED


class Leaving(BaseModel):
    """Departure requested; cost is frozen and payment is tracked."""

    status: Literal[SlotStatus.LEAVING] = SlotStatus.LEAVING
    booked_by: str
    vehicle_number: str
    reservation_time: datetime
    arrival_time: datetime
    parked_time: datetime
    leaving_request_time: datetime
    cost: int
    reservation_qr_code: Optional[str] = None
    occupied_qr_code: Optional[str] = None
    occupied_request_status: RequestStatus = RequestStatus.APPROVED
    leaving_request_status: RequestStatus = RequestStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_time: Optional[datetime] = None
    # Set while one admin completes the session (leaving_request_status=approved)
    completion_claimed_at: Optional[datetime] = None


SlotState = Annotated[
    Union[Available, Reserved, Occupied, Leaving, Maintenance],
    Field(discriminator="status"),
]

_STATE_ADAPTER: TypeAdapter = TypeAdapter(SlotState)

# Flat document shape persisted by the slot stores
DOCUMENT_FIELDS = (
    "status",
    "vehicle_number",
    "booked_by",
    "reservation_time",
    "arrival_time",
    "parked_time",
    "leaving_request_time",
    "occupied_request_status",
    "leaving_request_status",
    "cost",
    "payment_status",
    "payment_time",
    "reservation_qr_code",
    "occupied_qr_code",
    "completion_claimed_at",
)

# Fields compared by the stores' conditional update. The timestamps tie the
# snapshot to one session, so a later session by the same user on the same
# slot never matches.
GUARD_FIELDS = (
    "status",
    "booked_by",
    "reservation_time",
    "parked_time",
    "leaving_request_time",
    "occupied_request_status",
    "leaving_request_status",
    "payment_status",
    "completion_claimed_at",
)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class ParkingSlot(BaseModel):
    """One physical parking space and its current lifecycle state."""

    id: str
    qr_code: str
    state: SlotState

    @property
    def status(self) -> SlotStatus:
        return self.state.status

    @property
    def booked_by(self) -> Optional[str]:
        return getattr(self.state, "booked_by", None)

    def to_document(self) -> dict[str, Any]:
        """Flatten into the store document; fields absent from the variant are null."""
        document: dict[str, Any] = {field: None for field in DOCUMENT_FIELDS}
        document["cost"] = 0
        document.update(self.state.model_dump())
        document = {key: _plain(value) for key, value in document.items()}
        document["id"] = self.id
        document["qr_code"] = self.qr_code
        return document

    def guard(self) -> dict[str, Any]:
        """Expected field values for a conditional update against this snapshot."""
        document = self.to_document()
        return {field: document[field] for field in GUARD_FIELDS}

    def with_state(self, state: SlotState) -> "ParkingSlot":
        return ParkingSlot(id=self.id, qr_code=self.qr_code, state=state)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "ParkingSlot":
        """Rebuild from a flat store document, rejecting illegal field combinations."""
        values = {
            key: value
            for key, value in document.items()
            if key in DOCUMENT_FIELDS and value is not None
        }
        values["status"] = SlotStatus(document["status"])
        return cls(
            id=document["id"],
            qr_code=document.get("qr_code") or f"parking_slot:{document['id']}",
            state=_STATE_ADAPTER.validate_python(values),
        )


def available_document(slot_id: str) -> dict[str, Any]:
    """Initial document for a freshly created slot."""
    return ParkingSlot(
        id=slot_id, qr_code=f"parking_slot:{slot_id}", state=Available()
    ).to_document()


class User(BaseModel):
    """Identity record supplied by the user directory."""

    id: str
    name: str
    email: str
    vehicle_number: Optional[str] = None
    role: UserRole = UserRole.USER
    blocked: bool = False
    blocked_at: Optional[datetime] = None
    blocked_by: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Duration(BaseModel):
    """Display breakdown of an elapsed period."""

    hours: int
    minutes: int
    total_minutes: int


class CompletedParking(BaseModel):
    """Immutable archive of one finished session."""

    model_config = {"frozen": True}

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
    payment_status: PaymentStatus = PaymentStatus.PAID
    payment_time: Optional[datetime] = None
    approved_by: str
