"""Test ride booking status enum and transition rules."""

from enum import Enum
from typing import Dict, Set


class BookingStatus(str, Enum):
    """Test ride booking lifecycle status.

    Valid transitions:
    - PENDING -> CONFIRMED, CANCELLED
    - CONFIRMED -> COMPLETED, CANCELLED
    - CANCELLED -> (terminal state)
    - COMPLETED -> (terminal state)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @classmethod
    def from_string(cls, value: str) -> "BookingStatus":
        """Convert string to BookingStatus enum.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid booking status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_active(self) -> bool:
        """Active bookings hold the (user, vehicle, date, time) slot."""
        return self in ACTIVE_BOOKING_STATUSES

    def is_terminal(self) -> bool:
        return self in {BookingStatus.CANCELLED, BookingStatus.COMPLETED}


ACTIVE_BOOKING_STATUSES: Set[BookingStatus] = {
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
}

BOOKING_STATUS_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),  # Terminal
    BookingStatus.COMPLETED: set(),  # Terminal
}


def get_allowed_booking_transitions(current: BookingStatus) -> Set[BookingStatus]:
    """Get all allowed transitions from current booking status."""
    return BOOKING_STATUS_TRANSITIONS.get(current, set()).copy()
