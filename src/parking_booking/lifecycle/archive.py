"""Snapshotting of finished sessions into the history sink."""

import logging
import uuid
from datetime import datetime, timezone

from ..storage.base import HistorySink
from .errors import ArchivalError
from .models import CompletedParking, Leaving, PaymentStatus
from .pricing import compute_duration

logger = logging.getLogger(__name__)


def session_record_id(slot_id: str, session: Leaving) -> str:
    """Stable id of the archive record for one session on one slot."""
    parked = session.parked_time.astimezone(timezone.utc).isoformat()
    return uuid.uuid5(uuid.NAMESPACE_URL, f"parking:{slot_id}:{session.booked_by}:{parked}").hex


class HistoryArchiver:
    """
    Builds and persists one CompletedParking record per session.

    The archived duration runs from parked time to completion, while the
    billed cost was frozen at the leaving-request. Both are kept as-is.

    Record ids are derived from the session, so a completion retried after
    a crash finds the record it already wrote instead of adding another.
    """

    def __init__(self, sink: HistorySink):
        self.sink = sink

    def build(
        self,
        slot_id: str,
        session: Leaving,
        approved_by: str,
        completed_time: datetime,
    ) -> CompletedParking:
        return CompletedParking(
            id=session_record_id(slot_id, session),
            user_id=session.booked_by,
            slot_id=slot_id,
            vehicle_number=session.vehicle_number,
            reservation_time=session.reservation_time,
            arrival_time=session.arrival_time,
            parked_time=session.parked_time,
            leaving_request_time=session.leaving_request_time,
            completed_time=completed_time,
            duration=compute_duration(session.parked_time, completed_time),
            cost=session.cost,
            payment_status=PaymentStatus.PAID,
            payment_time=session.payment_time or completed_time,
            approved_by=approved_by,
        )

    def archive(
        self,
        slot_id: str,
        session: Leaving,
        approved_by: str,
        completed_time: datetime,
    ) -> CompletedParking:
        """
        Persist the session snapshot, or return the one already persisted.

        Raises:
            ArchivalError: The sink rejected or failed the write
        """
        record = self.build(slot_id, session, approved_by, completed_time)
        try:
            existing = self.sink.find_by_id(record.id)
            if existing is not None:
                logger.warning(f"Session on slot {slot_id} was already archived as {record.id}")
                return existing
            self.sink.append(record)
        except Exception as e:
            logger.error(f"Failed to archive session on slot {slot_id}: {e}")
            raise ArchivalError(f"Failed to archive parking session: {e}") from e

        logger.info(
            f"Archived session {record.id} on slot {slot_id} "
            f"({record.duration.total_minutes} min, cost {record.cost})"
        )
        return record
