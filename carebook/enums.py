"""
Enumerations for slot, appointment and escrow lifecycles.
"""

from enum import Enum


class SlotStatus(str, Enum):
    """Availability state of a bookable slot."""
    OPEN = "OPEN"
    HELD = "HELD"      # Reserved by a pending appointment
    BOOKED = "BOOKED"  # Appointment scheduled


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class EscrowStatus(str, Enum):
    """Escrow transaction states."""
    INITIATED = "INITIATED"  # Order created, funds not captured yet
    HELD = "HELD"            # Funds captured and held
    RELEASED = "RELEASED"    # Paid out to the doctor
    REFUNDED = "REFUNDED"    # Returned to the patient
    DISPUTED = "DISPUTED"    # Frozen pending operator resolution


class EscrowOperationType(str, Enum):
    """Escrow operations that accept an idempotency key."""
    CONFIRM_HOLD = "confirm_hold"
    RELEASE = "release"
    REFUND = "refund"
    DISPUTE = "dispute"
    RESOLVE = "resolve"


class DoctorDecision(str, Enum):
    """Doctor response to a booking request."""
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class Actor(str, Enum):
    """Who drove a state change."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    OPERATOR = "operator"
    SCHEDULER = "scheduler"
    PAYMENT_GATEWAY = "payment_gateway"
    SYSTEM = "system"


TERMINAL_APPOINTMENT_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED}
)

TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})
