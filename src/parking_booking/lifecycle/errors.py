"""Lifecycle error taxonomy.

Every error here is an expected outcome of normal usage or contention and is
reported back to the caller. Storage driver failures are not wrapped and
propagate unchanged.
"""


class LifecycleError(Exception):
    """Base class for rejected lifecycle actions."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LifecycleError):
    """Referenced slot, booking or user does not exist."""


class ConflictError(LifecycleError):
    """Slot is not in the state the action requires, or a concurrent update won."""


class InvalidStateError(LifecycleError):
    """Request/approval action with no matching pending request."""


class ExpiredReservationError(LifecycleError):
    """Reservation touched after its window; the slot has been released."""

    expired = True


class PaymentNotCompleteError(LifecycleError):
    """Leaving approval attempted before the session was paid."""


class ArchivalError(LifecycleError):
    """History sink failed; the completing transition was not applied."""
