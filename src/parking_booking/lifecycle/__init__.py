"""Parking slot lifecycle module."""

from .errors import (
    ArchivalError,
    ConflictError,
    ExpiredReservationError,
    InvalidStateError,
    LifecycleError,
    NotFoundError,
    PaymentNotCompleteError,
)
from .models import CompletedParking, ParkingSlot, SlotStatus, User

__all__ = [
    "ArchivalError",
    "ConflictError",
    "ExpiredReservationError",
    "InvalidStateError",
    "LifecycleError",
    "NotFoundError",
    "PaymentNotCompleteError",
    "CompletedParking",
    "ParkingSlot",
    "SlotStatus",
    "User",
]
