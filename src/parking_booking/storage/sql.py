"""SQLAlchemy-backed stores."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Engine,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from ..lifecycle.errors import ConflictError, NotFoundError
from ..lifecycle.models import CompletedParking, Duration, User, UserRole
from .base import Criteria

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class SlotRow(Base):
    __tablename__ = "parking_slots"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    qr_code: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), index=True, default="available")
    vehicle_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # One active slot per user
    booked_by: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    reservation_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    arrival_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    parked_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    leaving_request_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    occupied_request_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    leaving_request_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    cost: Mapped[int] = mapped_column(Integer, default=0)
    payment_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    payment_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reservation_qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occupied_qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completion_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CompletedParkingRow(Base):
    __tablename__ = "completed_parkings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    slot_id: Mapped[str] = mapped_column(String(32))
    vehicle_number: Mapped[str] = mapped_column(String(32))
    reservation_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    arrival_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    parked_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    leaving_request_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    duration_hours: Mapped[int] = mapped_column(Integer)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    duration_total_minutes: Mapped[int] = mapped_column(Integer)
    cost: Mapped[float] = mapped_column(Float)
    payment_status: Mapped[str] = mapped_column(String(16))
    payment_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str] = mapped_column(String(64))


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    email: Mapped[str] = mapped_column(String(256))
    vehicle_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default=UserRole.USER.value)
    blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


def build_engine(url: str) -> Engine:
    """
    Create an engine for the given database URL.

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def _aware(value: Any) -> Any:
    # SQLite drops tzinfo; stored timestamps are always UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Any) -> Any:
    """Normalise a timestamp to UTC before it is written or compared."""
    if isinstance(value, datetime):
        return _aware(value).astimezone(timezone.utc)
    return value


def _slot_document(row: SlotRow) -> dict[str, Any]:
    return {
        column.name: _aware(getattr(row, column.name))
        for column in SlotRow.__table__.columns
    }


def _slot_values(document: dict[str, Any]) -> dict[str, Any]:
    return {key: _utc(value) for key, value in document.items()}


def _where(criteria: Criteria) -> list:
    clauses = []
    for field, expected in criteria.items():
        column = getattr(SlotRow, field)
        if isinstance(expected, (tuple, list, set, frozenset)):
            clauses.append(column.in_([_utc(value) for value in expected]))
        elif expected is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == _utc(expected))
    return clauses


class SqlSlotStore:
    """Slot store whose conditional update is a single guarded UPDATE statement."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def find_by_key(self, slot_id: str) -> Optional[dict[str, Any]]:
        with Session(self.engine) as session:
            row = session.get(SlotRow, slot_id)
            return _slot_document(row) if row else None

    def find(self, criteria: Optional[Criteria] = None) -> list[dict[str, Any]]:
        stmt = select(SlotRow).where(*_where(criteria or {})).order_by(SlotRow.id)
        with Session(self.engine) as session:
            return [_slot_document(row) for row in session.scalars(stmt)]

    def find_one(self, criteria: Criteria) -> Optional[dict[str, Any]]:
        stmt = select(SlotRow).where(*_where(criteria)).order_by(SlotRow.id).limit(1)
        with Session(self.engine) as session:
            row = session.scalars(stmt).first()
            return _slot_document(row) if row else None

    def count(self, criteria: Optional[Criteria] = None) -> int:
        stmt = select(func.count()).select_from(SlotRow).where(*_where(criteria or {}))
        with Session(self.engine) as session:
            return session.scalar(stmt) or 0

    def insert(self, document: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            if session.get(SlotRow, document["id"]) is not None:
                return False
            session.add(SlotRow(**_slot_values(document)))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def conditional_update(
        self,
        slot_id: str,
        expected: Criteria,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        values = {key: value for key, value in _slot_values(changes).items() if key != "id"}
        stmt = (
            update(SlotRow)
            .where(SlotRow.id == slot_id, *_where(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with Session(self.engine) as session:
            try:
                result = session.execute(stmt)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError("You already have an active reservation") from e

            if result.rowcount == 0:
                if session.get(SlotRow, slot_id) is None:
                    raise NotFoundError(f"Slot '{slot_id}' not found")
                raise ConflictError(f"Slot '{slot_id}' was modified concurrently")

            session.expire_all()
            return _slot_document(session.get(SlotRow, slot_id))


def _to_record(row: CompletedParkingRow) -> CompletedParking:
    return CompletedParking(
        id=row.id,
        user_id=row.user_id,
        slot_id=row.slot_id,
        vehicle_number=row.vehicle_number,
        reservation_time=_aware(row.reservation_time),
        arrival_time=_aware(row.arrival_time),
        parked_time=_aware(row.parked_time),
        leaving_request_time=_aware(row.leaving_request_time),
        completed_time=_aware(row.completed_time),
        duration=Duration(
            hours=row.duration_hours,
            minutes=row.duration_minutes,
            total_minutes=row.duration_total_minutes,
        ),
        cost=int(row.cost),
        payment_status=row.payment_status,
        payment_time=_aware(row.payment_time),
        approved_by=row.approved_by,
    )


class SqlHistorySink:
    def __init__(self, engine: Engine):
        self.engine = engine

    def append(self, record: CompletedParking) -> None:
        with Session(self.engine) as session:
            session.add(
                CompletedParkingRow(
                    id=record.id,
                    user_id=record.user_id,
                    slot_id=record.slot_id,
                    vehicle_number=record.vehicle_number,
                    reservation_time=_utc(record.reservation_time),
                    arrival_time=_utc(record.arrival_time),
                    parked_time=_utc(record.parked_time),
                    leaving_request_time=_utc(record.leaving_request_time),
                    completed_time=_utc(record.completed_time),
                    duration_hours=record.duration.hours,
                    duration_minutes=record.duration.minutes,
                    duration_total_minutes=record.duration.total_minutes,
                    cost=record.cost,
                    payment_status=record.payment_status.value,
                    payment_time=_utc(record.payment_time),
                    approved_by=record.approved_by,
                )
            )
            session.commit()

    def find_by_id(self, record_id: str) -> Optional[CompletedParking]:
        with Session(self.engine) as session:
            row = session.get(CompletedParkingRow, record_id)
            return _to_record(row) if row else None

    def find(
        self,
        user_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[CompletedParking]:
        stmt = select(CompletedParkingRow)
        if user_id is not None:
            stmt = stmt.where(CompletedParkingRow.user_id == user_id)
        stmt = stmt.order_by(CompletedParkingRow.completed_time.desc()).offset(offset).limit(limit)
        with Session(self.engine) as session:
            return [_to_record(row) for row in session.scalars(stmt)]

    def count(self, user_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(CompletedParkingRow)
        if user_id is not None:
            stmt = stmt.where(CompletedParkingRow.user_id == user_id)
        with Session(self.engine) as session:
            return session.scalar(stmt) or 0


class SqlUserDirectory:
    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _to_user(row: UserRow) -> User:
        return User(
            id=row.id,
            name=row.name,
            email=row.email,
            vehicle_number=row.vehicle_number,
            role=UserRole(row.role),
            blocked=bool(row.blocked),
            blocked_at=_aware(row.blocked_at),
            blocked_by=row.blocked_by,
        )

    @staticmethod
    def _copy_into(row: UserRow, user: User) -> None:
        row.name = user.name
        row.email = user.email
        row.vehicle_number = user.vehicle_number
        row.role = user.role.value
        row.blocked = user.blocked
        row.blocked_at = _utc(user.blocked_at)
        row.blocked_by = user.blocked_by

    def find_by_id(self, user_id: str) -> User:
        with Session(self.engine) as session:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFoundError(f"User '{user_id}' not found")
            return self._to_user(row)

    def add(self, user: User) -> bool:
        with Session(self.engine) as session:
            if session.get(UserRow, user.id) is not None:
                return False
            row = UserRow(id=user.id)
            self._copy_into(row, user)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def update(self, user: User) -> User:
        with Session(self.engine) as session:
            row = session.get(UserRow, user.id)
            if row is None:
                raise NotFoundError(f"User '{user.id}' not found")
            self._copy_into(row, user)
            session.commit()
            return self._to_user(row)

    def list_users(self) -> list[User]:
        with Session(self.engine) as session:
            return [self._to_user(row) for row in session.scalars(select(UserRow).order_by(UserRow.id))]
