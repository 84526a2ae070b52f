"""Booking and payment state machines."""

from __future__ import annotations

from .errors import InvalidTransition

PENDING = "pending"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

BOOKING_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED, NO_SHOW}),
    CONFIRMED: frozenset({IN_PROGRESS, CANCELLED, NO_SHOW}),
    IN_PROGRESS: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)

# Bookings in these states hold (or may hold) availability capacity.
ACTIVE_STATUSES = frozenset({PENDING, CONFIRMED, IN_PROGRESS})

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"deposit_paid", "paid", "failed"}),
    "failed": frozenset({"pending", "deposit_paid", "paid"}),
    "deposit_paid": frozenset({"paid", "partially_refunded", "refunded"}),
    "paid": frozenset({"partially_refunded", "refunded"}),
    "partially_refunded": frozenset({"partially_refunded", "refunded"}),
    "refunded": frozenset(),
}

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "paid", "failed", "expired", "cancelled"}),
    "processing": frozenset({"paid", "failed", "expired", "cancelled"}),
    "paid": frozenset({"partially_refunded", "refunded"}),
    "partially_refunded": frozenset({"partially_refunded", "refunded"}),
    "failed": frozenset(),
    "expired": frozenset(),
    # A superseded session the customer still managed to pay.
    "cancelled": frozenset({"paid"}),
    "refunded": frozenset(),
}


def can_transition(current: str, target: str, table: dict[str, frozenset[str]] = BOOKING_TRANSITIONS) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(
    current: str,
    target: str,
    table: dict[str, frozenset[str]] = BOOKING_TRANSITIONS,
    *,
    entity: str = "Booking",
) -> None:
    if not can_transition(current, target, table):
        raise InvalidTransition(f"{entity} cannot move from {current} to {target}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
