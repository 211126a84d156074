"""Dispute intake and operator arbitration for escrow transactions"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...enums import EscrowStatus
from ...models import EscrowTransaction
from ...services.notification_service import Notifier, default_notifier
from ..payments.gateway import PaymentGateway, default_gateway
from .ledger import EscrowLedger

logger = logging.getLogger(__name__)


class DisputeResolver:
    """
    Freezes held funds on a patient's objection and settles them on an
    operator's decision. Only DISPUTED transactions can be resolved.
    """

    def __init__(
        self,
        db: Session,
        escrow: Optional[EscrowLedger] = None,
        gateway: PaymentGateway = default_gateway,
        notifier: Notifier = default_notifier,
    ):
        self.db = db
        self.escrow = escrow or EscrowLedger(db)
        self.gateway = gateway
        self.notifier = notifier

    def raise_dispute(
        self,
        reason: str,
        txn_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        """HELD -> DISPUTED, addressed by transaction id or appointment id"""
        if not reason or not reason.strip():
            raise ValueError("A dispute reason is required")
        if txn_id is None:
            if appointment_id is None:
                raise ValueError("Either txn_id or appointment_id is required")
            txn_id = self.escrow.get_by_appointment(appointment_id).id

        txn = self.escrow.dispute(txn_id, reason.strip(), idempotency_key=idempotency_key)
        self.notifier.notify(
            "escrow.disputed",
            txn_id=txn.id,
            appointment_id=txn.appointment_id,
            doctor_id=txn.doctor_id,
            reason=txn.dispute_reason,
        )
        return txn

    def resolve(
        self,
        txn_id: str,
        resolution: str,
        refund: bool,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        """
        Settle a dispute: refund=True returns the funds to the patient,
        otherwise they are released to the doctor.

        Raises:
            NotDisputed: the transaction is not currently DISPUTED
        """
        txn, settled = self.escrow.settle_dispute(
            txn_id, resolution, refund=refund, idempotency_key=idempotency_key
        )
        if not settled:
            # Replayed key; only the call that settled talks to the gateway
            return txn

        event = "escrow.released"
        if txn.status == EscrowStatus.REFUNDED.value:
            event = "escrow.refunded"
            try:
                self.gateway.refund(txn)
            except Exception as e:
                logger.error(f"❌ Gateway refund failed for disputed escrow {txn.id}: {e}")
        self.notifier.notify(
            event,
            txn_id=txn.id,
            appointment_id=txn.appointment_id,
            patient_id=txn.patient_id,
            doctor_id=txn.doctor_id,
            resolution=txn.dispute_resolution,
        )
        return txn

    def open_disputes(self, limit: int = 100) -> list[EscrowTransaction]:
        """Transactions awaiting an operator decision, oldest first"""
        return self.escrow.repo.list_by_status(self.db, EscrowStatus.DISPUTED, limit)
