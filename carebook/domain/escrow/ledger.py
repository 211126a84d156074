"""Escrow ledger - owns escrow transactions and their state machine"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import CURRENCY, PLATFORM_FEE_RATE
from ...database import atomic
from ...enums import TERMINAL_ESCROW_STATUSES, Actor, EscrowOperationType, EscrowStatus
from ...errors import (
    AlreadyReleased,
    DisputedCannotRelease,
    EscrowNotFound,
    InvalidAmount,
    InvalidEscrowState,
    NotDisputed,
)
from ...locks import EntityLockRegistry, entity_locks, escrow_key
from ...models import EscrowTransaction
from ...utils.clock import utcnow
from ..fees import FeeCalculator
from .repository import EscrowRepository

logger = logging.getLogger(__name__)


class EscrowLedger:
    """
    Escrow state machine:

        INITIATED -> HELD -> RELEASED
                          -> REFUNDED
                          -> DISPUTED -> RELEASED | REFUNDED (operator resolution)

    Every mutation runs under the transaction's entity lock with the row
    re-read FOR UPDATE, so two concurrent releases produce one RELEASED and
    one AlreadyReleased. Operations given an idempotency key are applied at
    most once; a retried key returns the transaction as it is now.
    """

    def __init__(
        self,
        db: Session,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
        platform_fee_rate: float = PLATFORM_FEE_RATE,
        currency: str = CURRENCY,
    ):
        self.db = db
        self.locks = locks
        self.clock = clock
        self.fees = FeeCalculator(platform_fee_rate=platform_fee_rate)
        self.currency = currency
        self.repo = EscrowRepository()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, txn_id: str) -> EscrowTransaction:
        txn = self.repo.get_by_id(self.db, txn_id)
        if not txn:
            raise EscrowNotFound()
        return txn

    def get_by_appointment(self, appointment_id: str) -> EscrowTransaction:
        txn = self.repo.get_by_appointment(self.db, appointment_id)
        if not txn:
            raise EscrowNotFound()
        return txn

    def list_for_patient(self, patient_id: str) -> list[EscrowTransaction]:
        return self.repo.list_for_patient(self.db, patient_id)

    def list_for_doctor(self, doctor_id: str) -> list[EscrowTransaction]:
        return self.repo.list_for_doctor(self.db, doctor_id)

    def due_for_release(self, now: datetime, limit: int) -> list[str]:
        return self.repo.due_for_release(self.db, now, limit)

    def doctor_earnings(self, doctor_id: str) -> dict:
        """Payout totals per escrow state for a doctor"""
        totals = self.repo.payout_totals_by_status(self.db, doctor_id)

        def payout(status: EscrowStatus) -> int:
            return totals.get(status.value, (0, 0))[0]

        return {
            "doctor_id": doctor_id,
            "total_held": payout(EscrowStatus.HELD),
            "total_released": payout(EscrowStatus.RELEASED),
            "total_disputed": payout(EscrowStatus.DISPUTED),
            "total_refunded": payout(EscrowStatus.REFUNDED),
            "pending_transactions": totals.get(EscrowStatus.HELD.value, (0, 0))[1],
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def initiate(
        self,
        appointment_id: str,
        patient_id: str,
        doctor_id: str,
        amount: int,
        platform_fee: Optional[int] = None,
    ) -> EscrowTransaction:
        """
        Create the INITIATED transaction for an appointment.

        Without an explicit platform_fee the split is derived from the
        platform rate. Initiating again for the same appointment and amount
        returns the existing transaction.
        """
        if amount is None or amount <= 0:
            raise InvalidAmount(f"Escrow amount must be greater than zero, got {amount}")
        if int(amount) != amount:
            raise InvalidAmount("Escrow amount must be a whole currency unit")
        amount = int(amount)

        if platform_fee is None:
            doctor_payout, platform_fee = self.fees.split_amount(amount)
        else:
            if platform_fee < 0 or platform_fee > amount:
                raise InvalidAmount(f"Platform fee {platform_fee} outside 0..{amount}")
            doctor_payout = amount - platform_fee

        with atomic(self.db):
            existing = self.repo.get_by_appointment(self.db, appointment_id)
            if existing:
                if existing.amount == amount and existing.patient_id == patient_id:
                    logger.info(
                        f"🔄 Escrow for appointment {appointment_id} already initiated: {existing.id}"
                    )
                    return existing
                raise InvalidEscrowState(
                    f"Appointment {appointment_id} already has escrow transaction {existing.id}"
                )

            txn = self.repo.create(
                self.db,
                appointment_id=appointment_id,
                patient_id=patient_id,
                doctor_id=doctor_id,
                amount=amount,
                platform_fee=platform_fee,
                doctor_payout=doctor_payout,
                currency=self.currency,
                status=EscrowStatus.INITIATED.value,
                created_at=self.clock(),
            )
            logger.info(
                f"💰 Escrow {txn.id} initiated for appointment {appointment_id}: "
                f"amount={amount} payout={doctor_payout} fee={platform_fee}"
            )
            return txn

    def _apply(
        self,
        txn_id: str,
        operation: EscrowOperationType,
        mutate: Callable[[EscrowTransaction], None],
        idempotency_key: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """Run mutate under the escrow lock; the flag is False when the key was already applied"""
        self.get_transaction(txn_id)

        with self.locks.hold(escrow_key(txn_id)), atomic(self.db):
            if idempotency_key:
                prior = self.repo.get_operation(self.db, idempotency_key)
                if prior:
                    if prior.txn_id != txn_id or prior.operation != operation.value:
                        raise InvalidEscrowState(
                            f"Idempotency key {idempotency_key} already used for "
                            f"{prior.operation} on {prior.txn_id}"
                        )
                    logger.info(
                        f"🔄 Escrow {operation.value} on {txn_id} already applied (key={idempotency_key})"
                    )
                    return self.repo.get_by_id(self.db, txn_id), False

            txn = self.repo.get_by_id(self.db, txn_id, for_update=True)
            mutate(txn)
            txn.updated_at = self.clock()

            if idempotency_key:
                self.repo.record_operation(self.db, idempotency_key, txn_id, operation, txn.status)
            self.db.flush()
            return txn, True

    def confirm_hold(
        self,
        txn_id: str,
        gateway_payment_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        """INITIATED -> HELD once the gateway confirms capture"""

        def mutate(txn: EscrowTransaction) -> None:
            if txn.status != EscrowStatus.INITIATED.value:
                raise InvalidEscrowState(f"Cannot hold transaction {txn.id} in {txn.status}")
            txn.status = EscrowStatus.HELD.value
            txn.held_at = self.clock()
            if gateway_payment_id:
                txn.gateway_payment_id = gateway_payment_id
            logger.info(f"💰 Escrow {txn.id}: {txn.amount} {txn.currency} held")

        return self._apply(txn_id, EscrowOperationType.CONFIRM_HOLD, mutate, idempotency_key)[0]

    def release(
        self,
        txn_id: str,
        released_by: Actor = Actor.SCHEDULER,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        """HELD -> RELEASED (doctor paid out)"""

        def mutate(txn: EscrowTransaction) -> None:
            if txn.status == EscrowStatus.RELEASED.value:
                raise AlreadyReleased()
            if txn.status == EscrowStatus.DISPUTED.value:
                raise DisputedCannotRelease()
            if txn.status != EscrowStatus.HELD.value:
                raise InvalidEscrowState(f"Cannot release transaction {txn.id} in {txn.status}")
            txn.status = EscrowStatus.RELEASED.value
            txn.released_at = self.clock()
            txn.released_by = released_by.value
            logger.info(
                f"✅ Escrow {txn.id}: {txn.doctor_payout} released to doctor {txn.doctor_id}"
            )

        return self._apply(txn_id, EscrowOperationType.RELEASE, mutate, idempotency_key)[0]

    def refund(self, txn_id: str, idempotency_key: Optional[str] = None) -> EscrowTransaction:
        """HELD|DISPUTED -> REFUNDED"""

        def mutate(txn: EscrowTransaction) -> None:
            if txn.status not in (EscrowStatus.HELD.value, EscrowStatus.DISPUTED.value):
                raise InvalidEscrowState(f"Cannot refund transaction {txn.id} in {txn.status}")
            txn.status = EscrowStatus.REFUNDED.value
            txn.refunded_at = self.clock()
            logger.info(f"↩️ Escrow {txn.id}: {txn.amount} refunded to patient {txn.patient_id}")

        return self._apply(txn_id, EscrowOperationType.REFUND, mutate, idempotency_key)[0]

    def dispute(
        self, txn_id: str, reason: str, idempotency_key: Optional[str] = None
    ) -> EscrowTransaction:
        """HELD -> DISPUTED; only held funds can be disputed"""

        def mutate(txn: EscrowTransaction) -> None:
            if txn.status != EscrowStatus.HELD.value:
                raise InvalidEscrowState(
                    f"Only held payments can be disputed; {txn.id} is {txn.status}"
                )
            txn.status = EscrowStatus.DISPUTED.value
            txn.disputed_at = self.clock()
            txn.dispute_reason = reason
            logger.warning(f"⚠️ Escrow {txn.id} disputed: {reason}")

        return self._apply(txn_id, EscrowOperationType.DISPUTE, mutate, idempotency_key)[0]

    def settle_dispute(
        self,
        txn_id: str,
        resolution: str,
        refund: bool,
        idempotency_key: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """
        DISPUTED -> REFUNDED (refund=True) or RELEASED.

        Returns the transaction and whether this call settled it; a replayed
        idempotency key returns False so the caller does not pay out twice.
        """

        def mutate(txn: EscrowTransaction) -> None:
            if txn.status != EscrowStatus.DISPUTED.value:
                raise NotDisputed(f"Transaction {txn.id} is {txn.status}, not DISPUTED")
            now = self.clock()
            txn.dispute_resolution = resolution
            txn.resolved_at = now
            if refund:
                txn.status = EscrowStatus.REFUNDED.value
                txn.refunded_at = now
            else:
                txn.status = EscrowStatus.RELEASED.value
                txn.released_at = now
                txn.released_by = Actor.OPERATOR.value
            logger.info(f"⚖️ Escrow {txn.id} dispute resolved -> {txn.status}: {resolution}")

        return self._apply(txn_id, EscrowOperationType.RESOLVE, mutate, idempotency_key)

    def schedule_release(self, txn_id: str, release_due_at: datetime) -> EscrowTransaction:
        """Set the earliest payout time; the release scheduler acts once it passes"""
        self.get_transaction(txn_id)
        with self.locks.hold(escrow_key(txn_id)), atomic(self.db):
            txn = self.repo.get_by_id(self.db, txn_id, for_update=True)
            if EscrowStatus(txn.status) in TERMINAL_ESCROW_STATUSES:
                logger.info(f"ℹ️ Escrow {txn_id} already {txn.status}; no release scheduled")
                return txn
            if txn.status != EscrowStatus.HELD.value:
                logger.warning(
                    f"⚠️ Escrow {txn_id} is {txn.status}; release at {release_due_at} "
                    f"will only apply once funds are held"
                )
            txn.release_due_at = release_due_at
            txn.updated_at = self.clock()
            logger.info(f"⏰ Escrow {txn_id} scheduled for release at {release_due_at}")
            return txn

    def mark_payment_failed(self, txn_id: str, reason: Optional[str] = None) -> EscrowTransaction:
        """Record a failed capture; the transaction stays INITIATED and never holds funds"""
        self.get_transaction(txn_id)
        with self.locks.hold(escrow_key(txn_id)), atomic(self.db):
            txn = self.repo.get_by_id(self.db, txn_id, for_update=True)
            if txn.status != EscrowStatus.INITIATED.value:
                raise InvalidEscrowState(
                    f"Cannot record payment failure for {txn_id} in {txn.status}"
                )
            txn.payment_failed_at = self.clock()
            txn.payment_failure_reason = reason
            txn.updated_at = self.clock()
            logger.warning(f"❌ Payment failed for escrow {txn_id}: {reason}")
            return txn

    def attach_gateway_order(self, txn_id: str, gateway_order_id: str) -> EscrowTransaction:
        self.get_transaction(txn_id)
        with self.locks.hold(escrow_key(txn_id)), atomic(self.db):
            txn = self.repo.get_by_id(self.db, txn_id, for_update=True)
            txn.gateway_order_id = gateway_order_id
            txn.updated_at = self.clock()
            return txn
