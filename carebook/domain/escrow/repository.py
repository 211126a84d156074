"""Escrow repository - Database operations for escrow transactions"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...enums import EscrowOperationType, EscrowStatus
from ...models import EscrowOperation, EscrowTransaction


class EscrowRepository:
    """Repository for escrow database operations"""

    @staticmethod
    def get_by_id(
        db: Session, txn_id: str, for_update: bool = False
    ) -> Optional[EscrowTransaction]:
        """Get a transaction by ID, refreshed from the database"""
        query = db.query(EscrowTransaction).populate_existing().filter(EscrowTransaction.id == txn_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def get_by_appointment(db: Session, appointment_id: str) -> Optional[EscrowTransaction]:
        """Get the transaction attached to an appointment"""
        return (
            db.query(EscrowTransaction)
            .populate_existing()
            .filter(EscrowTransaction.appointment_id == appointment_id)
            .first()
        )

    @staticmethod
    def create(db: Session, **txn_data) -> EscrowTransaction:
        """Create a transaction (flushed, not committed)"""
        txn = EscrowTransaction(**txn_data)
        db.add(txn)
        db.flush()
        return txn

    @staticmethod
    def get_operation(db: Session, idempotency_key: str) -> Optional[EscrowOperation]:
        return (
            db.query(EscrowOperation)
            .filter(EscrowOperation.idempotency_key == idempotency_key)
            .first()
        )

    @staticmethod
    def record_operation(
        db: Session,
        idempotency_key: str,
        txn_id: str,
        operation: EscrowOperationType,
        resulting_status: str,
    ) -> EscrowOperation:
        op = EscrowOperation(
            idempotency_key=idempotency_key,
            txn_id=txn_id,
            operation=operation.value,
            resulting_status=resulting_status,
        )
        db.add(op)
        db.flush()
        return op

    @staticmethod
    def list_for_patient(db: Session, patient_id: str) -> list[EscrowTransaction]:
        return (
            db.query(EscrowTransaction)
            .filter(EscrowTransaction.patient_id == patient_id)
            .order_by(EscrowTransaction.created_at.desc())
            .all()
        )

    @staticmethod
    def list_for_doctor(db: Session, doctor_id: str) -> list[EscrowTransaction]:
        return (
            db.query(EscrowTransaction)
            .filter(EscrowTransaction.doctor_id == doctor_id)
            .order_by(EscrowTransaction.created_at.desc())
            .all()
        )

    @staticmethod
    def list_by_status(db: Session, status: EscrowStatus, limit: int = 100) -> list[EscrowTransaction]:
        return (
            db.query(EscrowTransaction)
            .filter(EscrowTransaction.status == status.value)
            .order_by(EscrowTransaction.created_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def due_for_release(db: Session, now: datetime, limit: int) -> list[str]:
        """IDs of held transactions whose dispute window has passed"""
        rows = (
            db.query(EscrowTransaction.id)
            .filter(
                EscrowTransaction.status == EscrowStatus.HELD.value,
                EscrowTransaction.release_due_at.isnot(None),
                EscrowTransaction.release_due_at <= now,
            )
            .order_by(EscrowTransaction.release_due_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def payout_totals_by_status(db: Session, doctor_id: str) -> dict[str, tuple[int, int]]:
        """{status: (sum of doctor_payout, count)} for a doctor"""
        rows = (
            db.query(
                EscrowTransaction.status,
                func.coalesce(func.sum(EscrowTransaction.doctor_payout), 0),
                func.count(EscrowTransaction.id),
            )
            .filter(EscrowTransaction.doctor_id == doctor_id)
            .group_by(EscrowTransaction.status)
            .all()
        )
        return {status: (int(total), int(count)) for status, total, count in rows}

    @staticmethod
    def get_by_gateway_order(db: Session, gateway_order_id: str) -> Optional[EscrowTransaction]:
        return (
            db.query(EscrowTransaction)
            .populate_existing()
            .filter(EscrowTransaction.gateway_order_id == gateway_order_id)
            .first()
        )
