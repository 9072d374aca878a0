"""Timing and cost computation for parking sessions."""

import math
from datetime import datetime, timedelta

from .models import Duration

SECONDS_PER_HOUR = 3600


def elapsed_hours(start: datetime, end: datetime) -> float:
    """Real-valued hours between two timestamps, never negative."""
    return max((end - start).total_seconds(), 0.0) / SECONDS_PER_HOUR


def compute_cost(parked_time: datetime, leaving_time: datetime, price_per_hour: float) -> int:
    """
    Charge for a session, rounded up to a whole currency unit.

    Args:
        parked_time: When the admin approved the vehicle as parked
        leaving_time: When the user requested to leave
        price_per_hour: Hourly rate

    Returns:
        ceil(elapsed_hours * price_per_hour)
    """
    return math.ceil(elapsed_hours(parked_time, leaving_time) * price_per_hour)


def compute_duration(start: datetime, end: datetime) -> Duration:
    """Split an elapsed period into whole hours and minutes for display."""
    total_seconds = max(int((end - start).total_seconds()), 0)
    total_minutes = total_seconds // 60
    return Duration(
        hours=total_minutes // 60,
        minutes=total_minutes % 60,
        total_minutes=total_minutes,
    )


def arrival_deadline(reservation_time: datetime, window_minutes: int) -> datetime:
    return reservation_time + timedelta(minutes=window_minutes)


def is_reservation_expired(reservation_time: datetime, now: datetime, window_minutes: int) -> bool:
    """A reservation is still valid at exactly the deadline and expired after it."""
    return now > arrival_deadline(reservation_time, window_minutes)
