"""Parking slot lifecycle engine.

Translates user and admin actions into state transitions and applies them to
the slot store through conditional updates, so that concurrent callers on
the same slot are totally ordered and at most one of them wins.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional

from ..metrics import (
    increment_expirations,
    record_completed_session,
    record_conflict,
    record_transition,
    update_slot_counts,
)
from ..storage.base import HistorySink, SlotStore, UserDirectory
from . import gateway, qr, transitions
from .archive import HistoryArchiver
from .clock import Clock, SystemClock
from .errors import (
    ArchivalError,
    ConflictError,
    ExpiredReservationError,
    InvalidStateError,
    LifecycleError,
    NotFoundError,
)
from .gateway import Outcome, RequestKind
from .models import (
    ACTIVE_STATUSES,
    Available,
    CompletedParking,
    Duration,
    Leaving,
    ParkingSlot,
    PaymentStatus,
    RequestStatus,
    Reserved,
    SlotState,
    SlotStatus,
    User,
    UserRole,
)
from .pricing import compute_duration

logger = logging.getLogger(__name__)

DEFAULT_PRICE_PER_HOUR = 50
DEFAULT_WINDOW_MINUTES = 60
DEFAULT_CLAIM_TIMEOUT_MINUTES = 5
RELEASE_ATTEMPTS = 3


@dataclass
class BookingLookup:
    """A user's active slot, and whether the read released an expired reservation."""

    slot: Optional[ParkingSlot]
    expired: bool = False


@dataclass
class LeavingQuote:
    slot: ParkingSlot
    duration: Duration
    cost: int


@dataclass
class Completion:
    record: CompletedParking
    slot: ParkingSlot


@dataclass
class HistoryPage:
    records: list[CompletedParking]
    total: int
    page: int
    limit: int


@dataclass
class SlotStats:
    counts: dict[str, int]
    pending_occupied_requests: int
    pending_leaving_requests: int

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass
class UserPage:
    users: list[User]
    total: int
    page: int
    limit: int


@dataclass
class UserDetails:
    user: User
    booking: Optional[ParkingSlot]
    recent_parkings: list[CompletedParking]


@dataclass
class BlockResult:
    """A blocked user and the slot the block released, if any."""

    user: User
    released: Optional[ParkingSlot] = None


class LifecycleEngine:
    """
    Applies booking lifecycle actions to slots held in a SlotStore.

    Every write goes through `SlotStore.conditional_update` guarded by the
    snapshot the decision was based on. Losing a race surfaces as
    ConflictError; nothing is retried silently.

    Reservation expiry is lazy: a stale reservation is released by the
    first read or occupied-request that touches it.
    """

    def __init__(
        self,
        store: SlotStore,
        history: HistorySink,
        users: UserDirectory,
        clock: Optional[Clock] = None,
        renderer: Optional[qr.QrRenderer] = None,
        price_per_hour: float = DEFAULT_PRICE_PER_HOUR,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        claim_timeout_minutes: int = DEFAULT_CLAIM_TIMEOUT_MINUTES,
    ):
        """
        Initialize the engine.

        Args:
            store: Slot store with atomic conditional updates
            history: Sink receiving completed sessions
            users: Directory supplying user details for QR payloads
            clock: Time source (wall clock by default)
            renderer: Turns QR payloads into strings
            price_per_hour: Rate used when a leaving-request freezes the cost
            window_minutes: How long a reservation waits for an occupied-request
            claim_timeout_minutes: Age after which an unfinished completion
                claim may be taken over by another admin
        """
        self.store = store
        self.users = users
        self.clock = clock or SystemClock()
        self.renderer = renderer or qr.JsonQrRenderer()
        self.archiver = HistoryArchiver(history)
        self.history_sink = history
        self.price_per_hour = price_per_hour
        self.window_minutes = window_minutes
        self.claim_timeout = timedelta(minutes=claim_timeout_minutes)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _action(self, name: str) -> Iterator[None]:
        try:
            yield
        except LifecycleError as e:
            record_conflict(name)
            logger.info(f"{name} rejected: {e.detail}")
            raise

    def _load(self, slot_id: str) -> ParkingSlot:
        document = self.store.find_by_key(slot_id)
        if document is None:
            raise NotFoundError(f"Slot '{slot_id}' not found")
        return ParkingSlot.from_document(document)

    def _apply(self, action: str, slot: ParkingSlot, state: SlotState) -> ParkingSlot:
        """Write `state` if the stored slot still matches `slot`."""
        document = self.store.conditional_update(
            slot.id, slot.guard(), slot.with_state(state).to_document()
        )
        updated = ParkingSlot.from_document(document)
        record_transition(action, slot.status.value, updated.status.value)
        logger.info(f"Slot {slot.id}: {action} ({slot.status.value} -> {updated.status.value})")
        return updated

    def _expire(self, slot: ParkingSlot) -> ParkingSlot:
        updated = self._apply("expire", slot, Available())
        increment_expirations()
        logger.info(f"Reservation on slot {slot.id} by {slot.booked_by} expired")
        return updated

    def _refresh(self, slot: ParkingSlot, now: Optional[datetime] = None) -> tuple[ParkingSlot, bool]:
        """Release the slot if its reservation has expired; report whether it did."""
        now = now or self.clock.now()
        if not transitions.is_expired(slot.state, now, self.window_minutes):
            return slot, False
        try:
            return self._expire(slot), True
        except ConflictError:
            # Someone else touched the slot first; report against what is stored now
            current = self._load(slot.id)
            same_reservation = (
                isinstance(current.state, Reserved)
                and current.booked_by == slot.booked_by
                and current.state.reservation_time == slot.state.reservation_time
            )
            return current, not same_reservation

    def _find_booking(self, user_id: str, *statuses: SlotStatus) -> Optional[ParkingSlot]:
        document = self.store.find_one(
            {"booked_by": user_id, "status": [s.value for s in statuses]}
        )
        return ParkingSlot.from_document(document) if document else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_booking(self, user_id: str) -> BookingLookup:
        """The user's reserved, occupied or leaving slot, expiring it if stale."""
        slot = self._find_booking(user_id, *ACTIVE_STATUSES)
        if slot is None:
            return BookingLookup(slot=None)
        slot, expired = self._refresh(slot)
        if expired:
            return BookingLookup(slot=None, expired=True)
        return BookingLookup(slot=slot)

    def list_slots(self, user_id: str) -> list[ParkingSlot]:
        """Available slots plus the user's own reservation."""
        visible = []
        now = self.clock.now()
        candidates = self.store.find(
            {"status": [SlotStatus.AVAILABLE.value, SlotStatus.RESERVED.value]}
        )
        for document in candidates:
            slot, _ = self._refresh(ParkingSlot.from_document(document), now)
            if slot.status == SlotStatus.AVAILABLE:
                visible.append(slot)
            elif slot.status == SlotStatus.RESERVED and slot.booked_by == user_id:
                visible.append(slot)
        return visible

    def all_slots(self) -> list[ParkingSlot]:
        now = self.clock.now()
        return [
            self._refresh(ParkingSlot.from_document(document), now)[0]
            for document in self.store.find()
        ]

    def get_slot(self, slot_id: str) -> ParkingSlot:
        slot, _ = self._refresh(self._load(slot_id))
        return slot

    def slot_qr(self, slot_id: str) -> str:
        """Static QR payload printed on the physical slot."""
        return self._load(slot_id).qr_code

    def pending_requests(self, kind: Optional[RequestKind] = None) -> list[ParkingSlot]:
        slots = [ParkingSlot.from_document(d) for d in self.store.find()]
        return [slot for slot in slots if gateway.is_pending(slot.state, kind)]

    def stats(self) -> SlotStats:
        """Per-status slot counts and outstanding admin work."""
        counts = {
            status.value: self.store.count({"status": status.value})
            for status in SlotStatus
        }
        pending_occupied = self.store.count(
            {"status": SlotStatus.RESERVED.value, "occupied_request_status": RequestStatus.PENDING.value}
        )
        pending_leaving = self.store.count(
            {
                "status": SlotStatus.LEAVING.value,
                "leaving_request_status": RequestStatus.PENDING.value,
                "payment_status": PaymentStatus.PAID.value,
            }
        )
        update_slot_counts(counts)
        return SlotStats(
            counts=counts,
            pending_occupied_requests=pending_occupied,
            pending_leaving_requests=pending_leaving,
        )

    def history(self, user_id: str, page: int = 1, limit: int = 10) -> HistoryPage:
        return self.completed_parkings(user_id=user_id, page=page, limit=limit)

    def completed_parkings(
        self,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        page = max(page, 1)
        limit = max(limit, 1)
        records = self.history_sink.find(user_id=user_id, offset=(page - 1) * limit, limit=limit)
        return HistoryPage(
            records=records,
            total=self.history_sink.count(user_id=user_id),
            page=page,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def reserve(self, user_id: str, slot_id: str, vehicle_number: str) -> ParkingSlot:
        """
        Reserve an available slot for one hour.

        Raises:
            NotFoundError: Unknown user or slot
            ConflictError: User is blocked or already holds a slot, or the slot is taken
        """
        with self._action("reserve"):
            user = self.users.find_by_id(user_id)
            if user.blocked:
                raise ConflictError("Your account has been blocked. Please contact an administrator.")
            if self.current_booking(user_id).slot is not None:
                raise ConflictError("You already have an active reservation")

            slot, _ = self._refresh(self._load(slot_id))
            now = self.clock.now()
            state = transitions.reserve(
                slot.state, user_id, vehicle_number, now, self.window_minutes
            )
            state = state.model_copy(
                update={
                    "reservation_qr_code": self.renderer.render(
                        qr.reservation_payload(slot.id, state, user, now)
                    )
                }
            )
            return self._apply("reserve", slot, state)

    def request_occupied(self, user_id: str) -> ParkingSlot:
        """
        User attests the vehicle is parked; awaits admin approval.

        Raises:
            NotFoundError: No reservation held by the user
            ExpiredReservationError: Window elapsed; the slot was released
            InvalidStateError: A request is already pending
        """
        with self._action("request_occupied"):
            slot = self._find_booking(user_id, SlotStatus.RESERVED)
            if slot is None:
                raise NotFoundError("No active reservation found")

            now = self.clock.now()
            if transitions.is_expired(slot.state, now, self.window_minutes):
                self._expire(slot)
                raise ExpiredReservationError(
                    "Your reservation has expired (more than "
                    f"{self.window_minutes} minutes). Please make a new reservation."
                )

            state = gateway.submit_request(slot.state, RequestKind.OCCUPIED, now)
            return self._apply("request_occupied", slot, state)

    def request_leaving(self, user_id: str) -> LeavingQuote:
        """Freeze the session cost and open payment."""
        with self._action("request_leaving"):
            slot = self._find_booking(user_id, SlotStatus.OCCUPIED, SlotStatus.LEAVING)
            if slot is None:
                raise NotFoundError("No active parking found")

            now = self.clock.now()
            state = gateway.submit_request(
                slot.state, RequestKind.LEAVING, now, self.price_per_hour
            )
            updated = self._apply("request_leaving", slot, state)
            return LeavingQuote(
                slot=updated,
                duration=compute_duration(state.parked_time, now),
                cost=state.cost,
            )

    def pay(self, user_id: str) -> ParkingSlot:
        with self._action("pay"):
            slot = self._find_booking(user_id, SlotStatus.LEAVING)
            if slot is None:
                raise NotFoundError("No pending payment found")
            return self._apply("pay", slot, transitions.pay(slot.state, self.clock.now()))

    def cancel(self, user_id: str) -> ParkingSlot:
        """Drop the user's reservation, including one with a pending occupied-request."""
        with self._action("cancel"):
            slot = self._find_booking(user_id, SlotStatus.RESERVED)
            if slot is None:
                raise NotFoundError("No active reservation found")
            return self._apply("cancel", slot, transitions.cancel(slot.state))

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    def approve_occupied(self, slot_id: str, admin_id: str) -> ParkingSlot:
        with self._action("approve_occupied"):
            slot = self._load(slot_id)
            now = self.clock.now()
            state = gateway.decide(slot.state, RequestKind.OCCUPIED, Outcome.APPROVE, now)
            user = self.users.find_by_id(state.booked_by)
            code = self.renderer.render(
                qr.occupied_payload(slot.id, state, user, now, admin_id)
            )
            state = state.model_copy(update={"occupied_qr_code": code})
            updated = self._apply("approve_occupied", slot, state)
            logger.info(f"Admin {admin_id} approved occupied request on slot {slot_id}")
            return updated

    def reject_occupied(self, slot_id: str, admin_id: str) -> ParkingSlot:
        with self._action("reject_occupied"):
            slot = self._load(slot_id)
            state = gateway.decide(
                slot.state, RequestKind.OCCUPIED, Outcome.REJECT, self.clock.now()
            )
            updated = self._apply("reject_occupied", slot, state)
            logger.info(f"Admin {admin_id} rejected occupied request on slot {slot_id}")
            return updated

    def mark_payment(self, slot_id: str, admin_id: str) -> ParkingSlot:
        """Admin records an offline payment for a pending leaving request."""
        with self._action("mark_payment"):
            slot = self._load(slot_id)
            if not gateway.is_pending(slot.state, RequestKind.LEAVING):
                raise InvalidStateError("No pending leaving request found")
            if slot.state.payment_status == PaymentStatus.PAID:
                raise ConflictError("Payment already marked as paid")
            updated = self._apply("mark_payment", slot, transitions.pay(slot.state, self.clock.now()))
            logger.info(f"Admin {admin_id} marked payment received on slot {slot_id}")
            return updated

    def approve_leaving(self, slot_id: str, admin_id: str) -> Completion:
        """
        Complete a paid session: archive it, then free the slot.

        The slot is first claimed (leaving request approved) so that only one
        admin archives the session. If archival fails the claim is undone and
        the slot stays leaving. A claim left behind by a crashed completion
        can be taken over once it is older than the claim timeout; the
        archive step returns the record already written for the session.

        Raises:
            NotFoundError: Unknown slot
            InvalidStateError: No pending leaving request
            PaymentNotCompleteError: Session not paid yet
            ConflictError: Another admin is completing the session
            ArchivalError: History sink failed; slot unchanged
        """
        return self._complete("approve_leaving", slot_id, admin_id)

    def confirm_payment(self, slot_id: str, admin_id: str) -> Completion:
        """Same completion as `approve_leaving`, reached from the payment desk."""
        return self._complete("confirm_payment", slot_id, admin_id)

    def _complete(self, action: str, slot_id: str, admin_id: str) -> Completion:
        with self._action(action):
            slot = self._load(slot_id)
            now = self.clock.now()
            claimed = self._apply(
                "claim_leaving", slot, gateway.claim_leaving(slot.state, now, self.claim_timeout)
            )
            session: Leaving = claimed.state

            try:
                record = self.archiver.archive(slot.id, session, admin_id, now)
            except ArchivalError:
                self._apply("unclaim_leaving", claimed, gateway.unclaim_leaving(session))
                raise

            final = self._apply(action, claimed, gateway.finish_leaving(session))
            record_completed_session(record.cost, record.duration.total_minutes)
            return Completion(record=record, slot=final)

    def release(self, slot_id: str, admin_id: str) -> ParkingSlot:
        """Forced recovery: reset the slot to available from any state."""
        with self._action("release"):
            slot = self._load(slot_id)
            updated = self._apply("release", slot, transitions.release(slot.state))
            logger.warning(f"Admin {admin_id} released slot {slot_id} (was {slot.status.value})")
            return updated

    def set_status(self, slot_id: str, status: SlotStatus, admin_id: str) -> ParkingSlot:
        with self._action("set_status"):
            slot = self._load(slot_id)
            updated = self._apply("set_status", slot, transitions.set_status(slot.state, status))
            logger.info(f"Admin {admin_id} set slot {slot_id} to {status.value}")
            return updated

    def reset_pending_requests(self, admin_id: str) -> int:
        """Clear every pending occupied-request; the reservations stay in place."""
        reset = 0
        for slot in self.pending_requests(RequestKind.OCCUPIED):
            try:
                self._apply("reset_request", slot, transitions.clear_pending_occupied(slot.state))
                reset += 1
            except (ConflictError, InvalidStateError) as e:
                logger.info(f"Skipped resetting request on slot {slot.id}: {e.detail}")
        logger.info(f"Admin {admin_id} reset {reset} pending request(s)")
        return reset

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        name: str,
        email: str,
        vehicle_number: Optional[str],
        admin_id: str,
    ) -> User:
        """
        Provision a regular user account.

        Raises:
            ConflictError: A user with this id already exists
        """
        with self._action("register_user"):
            user = User(id=user_id, name=name, email=email, vehicle_number=vehicle_number)
            if not self.users.add(user):
                raise ConflictError(f"User '{user_id}' already exists")
            logger.info(f"Admin {admin_id} registered user {user_id}")
            return user

    def users_page(
        self,
        search: Optional[str] = None,
        blocked: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
    ) -> UserPage:
        """Regular users, optionally filtered by name/email substring and block state."""
        page = max(page, 1)
        limit = max(limit, 1)
        needle = search.lower() if search else None
        users = [
            user
            for user in self.users.list_users()
            if user.role == UserRole.USER
            and (blocked is None or user.blocked == blocked)
            and (needle is None or needle in user.name.lower() or needle in user.email.lower())
        ]
        start = (page - 1) * limit
        return UserPage(users=users[start:start + limit], total=len(users), page=page, limit=limit)

    def user_details(self, user_id: str, recent: int = 10) -> UserDetails:
        """A user with their current booking and most recent completed parkings."""
        user = self.users.find_by_id(user_id)
        return UserDetails(
            user=user,
            booking=self.current_booking(user_id).slot,
            recent_parkings=self.history_sink.find(user_id=user_id, offset=0, limit=recent),
        )

    def block_user(self, user_id: str, admin_id: str) -> BlockResult:
        """
        Block a user and release any slot they hold.

        The block is stored first so that no new reservation can slip in
        after the release.

        Raises:
            NotFoundError: Unknown user
            InvalidStateError: Admin account, or already blocked
        """
        with self._action("block_user"):
            user = self.users.find_by_id(user_id)
            if user.is_admin:
                raise InvalidStateError("Cannot block admin users")
            if user.blocked:
                raise InvalidStateError("User is already blocked")

            user = self.users.update(
                user.model_copy(
                    update={"blocked": True, "blocked_at": self.clock.now(), "blocked_by": admin_id}
                )
            )
            released = self._release_holdings(user_id)
            logger.warning(
                f"Admin {admin_id} blocked user {user_id}"
                + (f", released slot {released.id}" if released else "")
            )
            return BlockResult(user=user, released=released)

    def unblock_user(self, user_id: str, admin_id: str) -> User:
        with self._action("unblock_user"):
            user = self.users.find_by_id(user_id)
            if not user.blocked:
                raise InvalidStateError("User is not blocked")
            user = self.users.update(
                user.model_copy(update={"blocked": False, "blocked_at": None, "blocked_by": None})
            )
            logger.info(f"Admin {admin_id} unblocked user {user_id}")
            return user

    def _release_holdings(self, user_id: str) -> Optional[ParkingSlot]:
        """Free the user's active slot, re-reading it if a concurrent update wins."""
        for _ in range(RELEASE_ATTEMPTS):
            slot = self._find_booking(user_id, *ACTIVE_STATUSES)
            if slot is None:
                return None
            try:
                return self._apply("block_release", slot, transitions.release(slot.state))
            except ConflictError:
                logger.info(f"Slot {slot.id} changed while releasing it for {user_id}, retrying")
        raise ConflictError(f"Could not release the slot held by '{user_id}'")
