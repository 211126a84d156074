"""Appointment router - FastAPI endpoints for booking intake and appointment actions"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...enums import Actor, AppointmentStatus
from ...models import Appointment
from ..escrow.schemas import EscrowResponse, to_escrow_response
from .schemas import (
    AppointmentCreate,
    AppointmentResponse,
    BookingResponse,
    CancelRequest,
    DisputeRequest,
    DoctorActionRequest,
    DoctorResponseRequest,
    FeeBreakdownResponse,
    ReleaseRequest,
    StatusHistoryResponse,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


def to_appointment_response(a: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=a.id,
        patientId=a.patient_id,
        doctorId=a.doctor_id,
        slotId=a.slot_id,
        status=a.status,
        isEmergency=a.is_emergency,
        hasSubscription=a.has_subscription,
        consultationFee=a.consultation_fee,
        platformFee=a.platform_fee,
        totalAmount=a.total_amount,
        escrowTxnId=a.escrow_txn_id,
        cancellationReason=a.cancellation_reason,
        createdAt=a.created_at,
        acceptedAt=a.accepted_at,
        scheduledAt=a.scheduled_at,
        completedAt=a.completed_at,
        rejectedAt=a.rejected_at,
        cancelledAt=a.cancelled_at,
    )


# ============================================================================
# BOOKING INTAKE
# ============================================================================


@router.post("", response_model=BookingResponse, status_code=201)
def create_appointment(
    data: AppointmentCreate,
    service: BookingService = Depends(get_booking_service),
):
    """Reserve a slot, record the request and open escrow for it"""
    booking = service.create_appointment(
        patient_id=data.patientId,
        doctor_id=data.doctorId,
        slot_date=data.slot.slotDate,
        start_time=data.slot.startTime,
        end_time=data.slot.endTime,
        consultation_fee=data.consultationFee,
        is_emergency=data.isEmergency,
        has_subscription=data.hasSubscription,
        emergency_multiplier=data.emergencyMultiplier,
    )
    fees = booking.fees
    return BookingResponse(
        appointmentId=booking.appointment_id,
        escrowTxnId=booking.escrow_txn_id,
        amount=booking.amount,
        fees=FeeBreakdownResponse(
            baseFee=fees.base_fee,
            consultationFee=fees.consultation_fee,
            platformFee=fees.platform_fee,
            totalAmount=fees.total_amount,
            subscriptionDiscount=fees.subscription_discount,
            emergencySurcharge=fees.emergency_surcharge,
        ),
        gatewayOrderId=booking.gateway_order_id,
    )


# ============================================================================
# QUERIES
# ============================================================================


@router.get("", response_model=list[AppointmentResponse])
def list_appointments(
    patient_id: Optional[str] = Query(None),
    doctor_id: Optional[str] = Query(None),
    status: Optional[AppointmentStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    service: BookingService = Depends(get_booking_service),
):
    appointments = service.list_appointments(patient_id, doctor_id, status, limit)
    return [to_appointment_response(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    service: BookingService = Depends(get_booking_service),
):
    return to_appointment_response(service.get_appointment(appointment_id))


@router.get("/{appointment_id}/history", response_model=list[StatusHistoryResponse])
def get_appointment_history(
    appointment_id: str,
    service: BookingService = Depends(get_booking_service),
):
    """Audit trail of every status change"""
    return [
        StatusHistoryResponse(
            fromStatus=h.from_status,
            toStatus=h.to_status,
            actor=h.actor,
            reason=h.reason,
            createdAt=h.created_at,
        )
        for h in service.get_history(appointment_id)
    ]


# ============================================================================
# LIFECYCLE ACTIONS
# ============================================================================


@router.post("/{appointment_id}/respond", response_model=AppointmentResponse)
def respond_to_appointment(
    appointment_id: str,
    data: DoctorResponseRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Doctor accepts or rejects a booking request"""
    appointment = service.respond_to_appointment(
        appointment_id, data.decision, doctor_id=data.doctorId, reason=data.reason
    )
    return to_appointment_response(appointment)


@router.post("/{appointment_id}/schedule", response_model=AppointmentResponse)
def schedule_appointment(
    appointment_id: str,
    data: Optional[DoctorActionRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    doctor_id = data.doctorId if data else None
    return to_appointment_response(service.schedule(appointment_id, doctor_id=doctor_id))


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: str,
    data: Optional[DoctorActionRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    doctor_id = data.doctorId if data else None
    return to_appointment_response(service.complete(appointment_id, doctor_id=doctor_id))


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    data: Optional[CancelRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    data = data or CancelRequest()
    actor = Actor.DOCTOR if data.doctorId and not data.patientId else Actor.PATIENT
    appointment = service.cancel(
        appointment_id,
        actor=actor,
        reason=data.reason,
        patient_id=data.patientId,
        doctor_id=data.doctorId,
    )
    return to_appointment_response(appointment)


@router.post("/{appointment_id}/dispute", response_model=EscrowResponse)
def raise_dispute(
    appointment_id: str,
    data: DisputeRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Freeze the appointment's held payment pending operator review"""
    txn = service.raise_dispute(
        appointment_id,
        data.reason,
        patient_id=data.patientId,
        idempotency_key=data.idempotencyKey,
    )
    return to_escrow_response(txn)


@router.post("/{appointment_id}/release", response_model=EscrowResponse)
def release_payment(
    appointment_id: str,
    data: Optional[ReleaseRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    """Patient releases the held payment once the consultation is completed"""
    txn = service.release_early(
        appointment_id,
        released_by=Actor.PATIENT,
        patient_id=data.patientId if data else None,
        idempotency_key=data.idempotencyKey if data else None,
    )
    return to_escrow_response(txn)
