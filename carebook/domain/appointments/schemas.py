"""Appointment domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...enums import AppointmentStatus, DoctorDecision
from ...utils.clock import parse_hhmm


def validate_hhmm(v: str) -> str:
    try:
        parse_hhmm(v)
    except ValueError as e:
        raise ValueError("Time must be in HH:MM format") from e
    return v


class SlotRef(BaseModel):
    """Slot identity a booking targets"""

    slotDate: date
    startTime: str
    endTime: str

    @field_validator("startTime", "endTime")
    @classmethod
    def validate_time(cls, v):
        return validate_hhmm(v)

    @model_validator(mode="after")
    def validate_interval(self):
        if parse_hhmm(self.startTime) >= parse_hhmm(self.endTime):
            raise ValueError("startTime must be before endTime")
        return self


class AppointmentCreate(BaseModel):
    """Schema for a booking request"""

    patientId: str
    doctorId: str
    slot: SlotRef
    consultationFee: float
    isEmergency: bool = False
    hasSubscription: bool = False
    emergencyMultiplier: Optional[float] = None

    @field_validator("consultationFee")
    @classmethod
    def validate_fee(cls, v):
        if v <= 0:
            raise ValueError("Consultation fee must be greater than zero")
        return v

    @field_validator("emergencyMultiplier")
    @classmethod
    def validate_multiplier(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Emergency multiplier must be greater than zero")
        return v


class FeeBreakdownResponse(BaseModel):
    baseFee: int
    consultationFee: int
    platformFee: int
    totalAmount: int
    subscriptionDiscount: int
    emergencySurcharge: int


class BookingResponse(BaseModel):
    """Schema for a successful booking"""

    appointmentId: str
    escrowTxnId: str
    amount: int
    fees: FeeBreakdownResponse
    gatewayOrderId: Optional[str] = None


class DoctorResponseRequest(BaseModel):
    """Doctor decision on a REQUESTED appointment"""

    decision: DoctorDecision
    doctorId: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


class DoctorActionRequest(BaseModel):
    doctorId: Optional[str] = None


class CancelRequest(BaseModel):
    """Patient or doctor cancellation"""

    patientId: Optional[str] = None
    doctorId: Optional[str] = None
    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    """Patient objection to a held payment"""

    reason: str
    patientId: Optional[str] = None
    idempotencyKey: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("A dispute reason is required")
        return v


class ReleaseRequest(BaseModel):
    """Patient confirms the consultation and pays the doctor early"""

    patientId: Optional[str] = None
    idempotencyKey: Optional[str] = None


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""

    id: str
    patientId: str
    doctorId: str
    slotId: str
    status: AppointmentStatus
    isEmergency: bool
    hasSubscription: bool
    consultationFee: int
    platformFee: int
    totalAmount: int
    escrowTxnId: Optional[str] = None
    cancellationReason: Optional[str] = None
    createdAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    scheduledAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    rejectedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None


class StatusHistoryResponse(BaseModel):
    fromStatus: Optional[str] = None
    toStatus: str
    actor: str
    reason: Optional[str] = None
    createdAt: datetime
