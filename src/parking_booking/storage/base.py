"""Collaborator contracts consumed by the lifecycle engine."""

from typing import Any, Iterable, Optional, Protocol

from ..lifecycle.models import CompletedParking, User

# Criteria map a document field to a value, or to a tuple/list/set of
# accepted values.
Criteria = dict[str, Any]


def matches(document: dict[str, Any], criteria: Criteria) -> bool:
    """Evaluate criteria against a flat document."""
    for field, expected in criteria.items():
        value = document.get(field)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class SlotStore(Protocol):
    """Keyed store of flat slot documents."""

    def find_by_key(self, slot_id: str) -> Optional[dict[str, Any]]:
        ...

    def find_one(self, criteria: Criteria) -> Optional[dict[str, Any]]:
        ...

    def find(self, criteria: Optional[Criteria] = None) -> list[dict[str, Any]]:
        """Matching documents ordered by slot id."""
        ...

    def insert(self, document: dict[str, Any]) -> bool:
        """Insert a new slot; returns False when the id already exists."""
        ...

    def conditional_update(
        self,
        slot_id: str,
        expected: Criteria,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Atomically apply `changes` if the stored document matches `expected`.

        A non-null `booked_by` is unique across slots.

        Raises:
            NotFoundError: No slot with this id
            ConflictError: Expected fields did not match, or the change would
                give a user a second slot
        """
        ...

    def count(self, criteria: Optional[Criteria] = None) -> int:
        ...


class HistorySink(Protocol):
    """Append-only archive of completed sessions."""

    def append(self, record: CompletedParking) -> None:
        ...

    def find_by_id(self, record_id: str) -> Optional[CompletedParking]:
        ...

    def find(
        self,
        user_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[CompletedParking]:
        """Records newest first."""
        ...

    def count(self, user_id: Optional[str] = None) -> int:
        ...


class UserDirectory(Protocol):
    def find_by_id(self, user_id: str) -> User:
        """Raises NotFoundError for unknown ids."""
        ...

    def add(self, user: User) -> bool:
        """Register a user; returns False when the id already exists."""
        ...

    def update(self, user: User) -> User:
        """Replace a stored user. Raises NotFoundError for unknown ids."""
        ...

    def list_users(self) -> Iterable[User]:
        """Every user ordered by id."""
        ...
