"""In-process stores guarded by a lock."""

import logging
import threading
from typing import Any, Iterable, Optional

from ..lifecycle.errors import ConflictError, NotFoundError
from ..lifecycle.models import CompletedParking, User
from .base import Criteria, matches

logger = logging.getLogger(__name__)


class InMemorySlotStore:
    """Slot documents in a dict; every read-modify-write runs under one lock."""

    def __init__(self):
        self._slots: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def find_by_key(self, slot_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            document = self._slots.get(slot_id)
            return dict(document) if document else None

    def find(self, criteria: Optional[Criteria] = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(self._slots[slot_id])
                for slot_id in sorted(self._slots)
                if matches(self._slots[slot_id], criteria or {})
            ]

    def find_one(self, criteria: Criteria) -> Optional[dict[str, Any]]:
        found = self.find(criteria)
        return found[0] if found else None

    def count(self, criteria: Optional[Criteria] = None) -> int:
        return len(self.find(criteria))

    def insert(self, document: dict[str, Any]) -> bool:
        with self._lock:
            if document["id"] in self._slots:
                return False
            self._slots[document["id"]] = dict(document)
            return True

    def conditional_update(
        self,
        slot_id: str,
        expected: Criteria,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            current = self._slots.get(slot_id)
            if current is None:
                raise NotFoundError(f"Slot '{slot_id}' not found")
            if not matches(current, expected):
                raise ConflictError(f"Slot '{slot_id}' was modified concurrently")

            booked_by = changes.get("booked_by")
            if booked_by is not None:
                for other_id, other in self._slots.items():
                    if other_id != slot_id and other.get("booked_by") == booked_by:
                        raise ConflictError("You already have an active reservation")

            updated = {**current, **changes, "id": slot_id}
            self._slots[slot_id] = updated
            return dict(updated)


class InMemoryHistorySink:
    def __init__(self):
        self._records: list[CompletedParking] = []
        self._lock = threading.Lock()

    def append(self, record: CompletedParking) -> None:
        with self._lock:
            self._records.append(record)

    def find_by_id(self, record_id: str) -> Optional[CompletedParking]:
        with self._lock:
            return next((r for r in self._records if r.id == record_id), None)

    def _matching(self, user_id: Optional[str]) -> list[CompletedParking]:
        with self._lock:
            records = [r for r in self._records if user_id is None or r.user_id == user_id]
        return sorted(records, key=lambda r: r.completed_time, reverse=True)

    def find(
        self,
        user_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[CompletedParking]:
        return self._matching(user_id)[offset:offset + limit]

    def count(self, user_id: Optional[str] = None) -> int:
        return len(self._matching(user_id))


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[User] = ()):
        self._users: dict[str, User] = {}
        self._lock = threading.Lock()
        for user in users:
            self.add(user)

    def find_by_id(self, user_id: str) -> User:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found")
        return user

    def add(self, user: User) -> bool:
        with self._lock:
            if user.id in self._users:
                return False
            self._users[user.id] = user
        logger.debug(f"Registered user {user.id} ({user.role.value})")
        return True

    def update(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise NotFoundError(f"User '{user.id}' not found")
            self._users[user.id] = user
        return user

    def list_users(self) -> list[User]:
        with self._lock:
            return [self._users[user_id] for user_id in sorted(self._users)]
