"""Appointment domain: lifecycle state machine and booking intake"""

from .service import BookingConfirmation, BookingService
from .state_machine import ALLOWED_TRANSITIONS, AppointmentStateMachine, can_transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AppointmentStateMachine",
    "BookingConfirmation",
    "BookingService",
    "can_transition",
]
