"""
Typed failures raised by the booking & escrow engine.

Each error carries the HTTP status the API layer maps it to and a stable
machine-readable code for clients.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for all engine failures"""

    status_code = 400
    code = "booking_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return "Booking engine error"

    @property
    def message(self) -> str:
        return str(self)


class SlotUnavailable(BookingEngineError):
    """Another booking won the slot; the caller should pick another time"""

    status_code = 409
    code = "slot_unavailable"

    def default_message(self) -> str:
        return "This time slot is no longer available. Please choose another time."


class InvalidSlotState(BookingEngineError):
    status_code = 409
    code = "invalid_slot_state"


class InvalidTransition(BookingEngineError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition appointment from {from_status} to {to_status}")


class InvalidEscrowState(BookingEngineError):
    status_code = 409
    code = "invalid_escrow_state"


class InvalidAmount(BookingEngineError):
    status_code = 422
    code = "invalid_amount"

    def default_message(self) -> str:
        return "Amount must be greater than zero"


class AlreadyReleased(BookingEngineError):
    status_code = 409
    code = "already_released"

    def default_message(self) -> str:
        return "Payment already released"


class DisputedCannotRelease(BookingEngineError):
    status_code = 409
    code = "disputed_cannot_release"

    def default_message(self) -> str:
        return "Cannot release disputed payment"


class ReleaseNotAllowed(BookingEngineError):
    status_code = 409
    code = "release_not_allowed"

    def default_message(self) -> str:
        return "Payment can only be released after the consultation is completed"


class NotDisputed(BookingEngineError):
    status_code = 409
    code = "not_disputed"

    def default_message(self) -> str:
        return "Transaction is not under dispute"


class PaymentFailed(BookingEngineError):
    """The gateway could not take payment; the slot has already been released"""

    status_code = 502
    code = "payment_failed"

    def default_message(self) -> str:
        return "Payment could not be processed. Your slot has been released."


class AppointmentNotFound(BookingEngineError):
    status_code = 404
    code = "appointment_not_found"

    def default_message(self) -> str:
        return "Appointment not found"


class SlotNotFound(BookingEngineError):
    status_code = 404
    code = "slot_not_found"

    def default_message(self) -> str:
        return "Slot not found"


class EscrowNotFound(BookingEngineError):
    status_code = 404
    code = "escrow_not_found"

    def default_message(self) -> str:
        return "Transaction not found"


class PermissionDenied(BookingEngineError):
    status_code = 403
    code = "permission_denied"

    def default_message(self) -> str:
        return "Not authorized"
