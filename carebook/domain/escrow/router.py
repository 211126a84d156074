"""Escrow router - FastAPI endpoints for escrow queries, disputes and operator actions"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import require_operator
from ...database import get_db
from ...enums import Actor
from ..appointments.service import BookingService
from .disputes import DisputeResolver
from .ledger import EscrowLedger
from .schemas import (
    DoctorEarningsResponse,
    EscrowDisputeRequest,
    EscrowResponse,
    ManualReleaseRequest,
    ResolveDisputeRequest,
    to_escrow_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrow", tags=["Escrow"])


def get_escrow_ledger(db: Session = Depends(get_db)) -> EscrowLedger:
    """Dependency injection for EscrowLedger"""
    return EscrowLedger(db)


def get_dispute_resolver(
    db: Session = Depends(get_db), escrow: EscrowLedger = Depends(get_escrow_ledger)
) -> DisputeResolver:
    return DisputeResolver(db, escrow=escrow)


# ============================================================================
# QUERIES
# ============================================================================


@router.get("", response_model=list[EscrowResponse])
def list_transactions(
    patient_id: Optional[str] = Query(None),
    doctor_id: Optional[str] = Query(None),
    escrow: EscrowLedger = Depends(get_escrow_ledger),
):
    if patient_id:
        return [to_escrow_response(t) for t in escrow.list_for_patient(patient_id)]
    if doctor_id:
        return [to_escrow_response(t) for t in escrow.list_for_doctor(doctor_id)]
    raise HTTPException(status_code=400, detail="patient_id or doctor_id is required")


@router.get("/disputes", response_model=list[EscrowResponse])
def list_open_disputes(
    limit: int = Query(100, ge=1, le=500),
    _operator: str = Depends(require_operator),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
):
    """Disputed transactions awaiting an operator decision"""
    return [to_escrow_response(t) for t in resolver.open_disputes(limit)]


@router.get("/by-appointment/{appointment_id}", response_model=EscrowResponse)
def get_transaction_for_appointment(
    appointment_id: str,
    escrow: EscrowLedger = Depends(get_escrow_ledger),
):
    return to_escrow_response(escrow.get_by_appointment(appointment_id))


@router.get("/doctors/{doctor_id}/earnings", response_model=DoctorEarningsResponse)
def get_doctor_earnings(
    doctor_id: str,
    escrow: EscrowLedger = Depends(get_escrow_ledger),
):
    earnings = escrow.doctor_earnings(doctor_id)
    return DoctorEarningsResponse(
        doctorId=earnings["doctor_id"],
        totalHeld=earnings["total_held"],
        totalReleased=earnings["total_released"],
        totalDisputed=earnings["total_disputed"],
        totalRefunded=earnings["total_refunded"],
        pendingTransactions=earnings["pending_transactions"],
    )


@router.get("/{txn_id}", response_model=EscrowResponse)
def get_transaction(
    txn_id: str,
    escrow: EscrowLedger = Depends(get_escrow_ledger),
):
    return to_escrow_response(escrow.get_transaction(txn_id))


# ============================================================================
# DISPUTES
# ============================================================================


@router.post("/{txn_id}/dispute", response_model=EscrowResponse)
def raise_dispute(
    txn_id: str,
    data: EscrowDisputeRequest,
    resolver: DisputeResolver = Depends(get_dispute_resolver),
):
    txn = resolver.raise_dispute(data.reason, txn_id=txn_id, idempotency_key=data.idempotencyKey)
    return to_escrow_response(txn)


@router.post("/{txn_id}/resolve", response_model=EscrowResponse)
def resolve_dispute(
    txn_id: str,
    data: ResolveDisputeRequest,
    _operator: str = Depends(require_operator),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
):
    """Operator settles a dispute by refunding the patient or releasing to the doctor"""
    txn = resolver.resolve(
        txn_id, data.resolution, refund=data.refund, idempotency_key=data.idempotencyKey
    )
    logger.info(f"⚖️ Operator resolved dispute on {txn_id}: {txn.status}")
    return to_escrow_response(txn)


@router.post("/{txn_id}/release", response_model=EscrowResponse)
def release_transaction(
    txn_id: str,
    data: Optional[ManualReleaseRequest] = None,
    _operator: str = Depends(require_operator),
    db: Session = Depends(get_db),
    escrow: EscrowLedger = Depends(get_escrow_ledger),
):
    """Operator pays out held funds of a completed consultation ahead of the scheduled release"""
    key = data.idempotencyKey if data else None
    appointment_id = escrow.get_transaction(txn_id).appointment_id
    txn = BookingService(db).release_early(
        appointment_id, released_by=Actor.OPERATOR, idempotency_key=key
    )
    return to_escrow_response(txn)
