"""Escrow domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...enums import EscrowStatus
from ...models import EscrowTransaction


class EscrowResponse(BaseModel):
    """Schema for escrow transaction response"""

    id: str
    appointmentId: str
    patientId: str
    doctorId: str
    amount: int
    platformFee: int
    doctorPayout: int
    currency: str
    status: EscrowStatus
    gatewayOrderId: Optional[str] = None
    gatewayPaymentId: Optional[str] = None
    paymentFailureReason: Optional[str] = None
    releaseDueAt: Optional[datetime] = None
    releasedBy: Optional[str] = None
    disputeReason: Optional[str] = None
    disputeResolution: Optional[str] = None
    createdAt: Optional[datetime] = None
    heldAt: Optional[datetime] = None
    releasedAt: Optional[datetime] = None
    refundedAt: Optional[datetime] = None
    disputedAt: Optional[datetime] = None
    resolvedAt: Optional[datetime] = None


def to_escrow_response(txn: EscrowTransaction) -> EscrowResponse:
    return EscrowResponse(
        id=txn.id,
        appointmentId=txn.appointment_id,
        patientId=txn.patient_id,
        doctorId=txn.doctor_id,
        amount=txn.amount,
        platformFee=txn.platform_fee,
        doctorPayout=txn.doctor_payout,
        currency=txn.currency,
        status=txn.status,
        gatewayOrderId=txn.gateway_order_id,
        gatewayPaymentId=txn.gateway_payment_id,
        paymentFailureReason=txn.payment_failure_reason,
        releaseDueAt=txn.release_due_at,
        releasedBy=txn.released_by,
        disputeReason=txn.dispute_reason,
        disputeResolution=txn.dispute_resolution,
        createdAt=txn.created_at,
        heldAt=txn.held_at,
        releasedAt=txn.released_at,
        refundedAt=txn.refunded_at,
        disputedAt=txn.disputed_at,
        resolvedAt=txn.resolved_at,
    )


class EscrowDisputeRequest(BaseModel):
    reason: str
    idempotencyKey: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("A dispute reason is required")
        return v


class ResolveDisputeRequest(BaseModel):
    """Operator decision on a disputed transaction"""

    resolution: str
    refund: bool
    idempotencyKey: Optional[str] = None

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("A resolution note is required")
        return v


class ManualReleaseRequest(BaseModel):
    idempotencyKey: Optional[str] = None


class DoctorEarningsResponse(BaseModel):
    doctorId: str
    totalHeld: int
    totalReleased: int
    totalDisputed: int
    totalRefunded: int
    pendingTransactions: int
