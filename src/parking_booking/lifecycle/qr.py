"""QR payload construction.

The core only builds the structured session info; turning it into an
encodable string (or an image) is the renderer's job.
"""

import json
from datetime import datetime
from typing import Any, Optional, Protocol

from .models import Occupied, Reserved, User

PAYLOAD_VERSION = "1.0"
SYSTEM_NAME = "QR Parking Management"


class QrRenderer(Protocol):
    def render(self, payload: dict[str, Any]) -> str:
        ...


class JsonQrRenderer:
    """Renders payloads as compact JSON, the string embedded in the QR image."""

    def render(self, payload: dict[str, Any]) -> str:
        return json.dumps(payload, separators=(",", ":"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _user_info(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "vehicleNumber": user.vehicle_number,
    }


def _slot_info(slot_id: str) -> dict[str, Any]:
    return {"id": slot_id, "location": f"Slot {slot_id}", "floor": 1}


def reservation_payload(slot_id: str, state: Reserved, user: User, now: datetime) -> dict[str, Any]:
    """Payload shown to the user when a reservation is made."""
    return {
        "type": "reservation",
        "slotId": slot_id,
        "reservationTime": _iso(state.reservation_time),
        "arrivalTime": _iso(state.arrival_time),
        "vehicleNumber": state.vehicle_number,
        "user": _user_info(user),
        "slot": _slot_info(slot_id),
        "timestamp": _iso(now),
        "version": PAYLOAD_VERSION,
        "system": SYSTEM_NAME,
    }


def occupied_payload(
    slot_id: str,
    state: Reserved | Occupied,
    user: User,
    parked_time: datetime,
    approved_by: str,
) -> dict[str, Any]:
    """Payload issued once an admin confirms the vehicle is parked."""
    return {
        "type": "occupied",
        "slotId": slot_id,
        "reservationTime": _iso(state.reservation_time),
        "arrivalTime": _iso(state.arrival_time),
        "parkedTime": _iso(parked_time),
        "vehicleNumber": state.vehicle_number,
        "user": _user_info(user),
        "slot": _slot_info(slot_id),
        "approvedBy": approved_by,
        "approvedAt": _iso(parked_time),
        "timestamp": _iso(parked_time),
        "version": PAYLOAD_VERSION,
        "system": SYSTEM_NAME,
        "status": "occupied",
    }
