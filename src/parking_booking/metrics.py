"""Prometheus metrics for the booking lifecycle."""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

# Applied transitions by action and status change
SLOT_TRANSITIONS = Counter(
    "parking_slot_transitions_total",
    "Total number of applied slot lifecycle transitions",
    ["action", "from_status", "to_status"],
    registry=REGISTRY,
)

# Rejected actions (precondition misses and lost races)
SLOT_CONFLICTS = Counter(
    "parking_slot_conflicts_total",
    "Total number of lifecycle actions rejected with a conflict",
    ["action"],
    registry=REGISTRY,
)

RESERVATION_EXPIRATIONS = Counter(
    "parking_reservation_expirations_total",
    "Number of reservations released after their arrival window",
    registry=REGISTRY,
)

COMPLETED_SESSIONS = Counter(
    "parking_completed_sessions_total",
    "Number of parking sessions archived",
    registry=REGISTRY,
)

SESSION_REVENUE = Counter(
    "parking_session_revenue_total",
    "Sum of costs of completed parking sessions",
    registry=REGISTRY,
)

# Parked duration of completed sessions (in minutes)
SESSION_DURATION = Histogram(
    "parking_session_duration_minutes",
    "Parked duration of completed sessions",
    buckets=(15, 30, 60, 120, 180, 240, 480, 720, 1440),
    registry=REGISTRY,
)

# Current slot counts per status
SLOTS_BY_STATUS = Gauge(
    "parking_slots",
    "Number of parking slots in each status",
    ["status"],
    registry=REGISTRY,
)


def record_transition(action: str, from_status: str, to_status: str) -> None:
    """Record an applied transition."""
    SLOT_TRANSITIONS.labels(action=action, from_status=from_status, to_status=to_status).inc()


def record_conflict(action: str) -> None:
    SLOT_CONFLICTS.labels(action=action).inc()


def increment_expirations() -> None:
    RESERVATION_EXPIRATIONS.inc()


def record_completed_session(cost: float, total_minutes: int) -> None:
    """Record an archived session."""
    COMPLETED_SESSIONS.inc()
    SESSION_REVENUE.inc(cost)
    SESSION_DURATION.observe(total_minutes)


def update_slot_counts(counts: dict[str, int]) -> None:
    """Update per-status slot gauges."""
    for status, count in counts.items():
        SLOTS_BY_STATUS.labels(status=status).set(count)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)
