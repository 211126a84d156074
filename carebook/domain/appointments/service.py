"""Booking service - Business logic for appointment intake and doctor/patient actions"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import ESCROW_RELEASE_DELAY_MINUTES
from ...database import atomic
from ...enums import Actor, AppointmentStatus, DoctorDecision
from ...errors import PaymentFailed, PermissionDenied, ReleaseNotAllowed
from ...locks import EntityLockRegistry, appointment_key, entity_locks, escrow_key, slot_key
from ...models import Appointment, AppointmentStatusHistory, EscrowTransaction, generate_id
from ...services.notification_service import Notifier, default_notifier
from ...utils.clock import utcnow
from ..escrow.disputes import DisputeResolver
from ..escrow.ledger import EscrowLedger
from ..fees import FeeBreakdown, FeeCalculator
from ..payments.gateway import PaymentGateway, PaymentGatewayError, default_gateway
from ..slots.ledger import SlotLedger, validate_interval
from .repository import AppointmentRepository
from .state_machine import AppointmentStateMachine

logger = logging.getLogger(__name__)

_new_appointment_id = generate_id("appt")


@dataclass
class BookingConfirmation:
    appointment_id: str
    escrow_txn_id: str
    amount: int
    fees: FeeBreakdown
    gateway_order_id: Optional[str] = None


class BookingService:
    """Service layer for booking intake and appointment actions"""

    def __init__(
        self,
        db: Session,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
        fees: Optional[FeeCalculator] = None,
        gateway: PaymentGateway = default_gateway,
        notifier: Notifier = default_notifier,
        release_delay_minutes: int = ESCROW_RELEASE_DELAY_MINUTES,
    ):
        self.db = db
        self.locks = locks
        self.fees = fees or FeeCalculator()
        self.gateway = gateway
        self.notifier = notifier
        self.slots = SlotLedger(db, locks=locks, clock=clock)
        self.escrow = EscrowLedger(
            db, locks=locks, clock=clock, platform_fee_rate=self.fees.platform_fee_rate
        )
        self.state_machine = AppointmentStateMachine(
            db,
            slots=self.slots,
            escrow=self.escrow,
            locks=locks,
            clock=clock,
            release_delay_minutes=release_delay_minutes,
            gateway=gateway,
            notifier=notifier,
        )
        self.disputes = DisputeResolver(
            db, escrow=self.escrow, gateway=gateway, notifier=notifier
        )
        self.repo = AppointmentRepository()

    def create_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        slot_date: date,
        start_time: str,
        end_time: str,
        consultation_fee,
        is_emergency: bool = False,
        has_subscription: bool = False,
        emergency_multiplier=None,
    ) -> BookingConfirmation:
        """
        Book a slot for a patient.

        Fees are computed first so an invalid amount never touches the slot.
        Reserving the slot, recording the REQUESTED appointment and initiating
        escrow happen in one transaction under the slot lock; the gateway order
        is opened afterwards, outside every lock.

        Raises:
            SlotUnavailable: another booking holds the slot
            InvalidAmount: the fee inputs produce a non-positive amount
            PaymentFailed: the gateway could not open an order (slot released)
        """
        validate_interval(start_time, end_time)
        breakdown = self.fees.compute(
            consultation_fee,
            is_emergency=is_emergency,
            has_subscription=has_subscription,
            emergency_multiplier=emergency_multiplier,
        )

        appointment_id = _new_appointment_id()
        keys = (
            slot_key(doctor_id, slot_date, start_time, end_time),
            appointment_key(appointment_id),
        )
        with self.locks.hold(*keys), atomic(self.db):
            slot = self.slots.reserve(
                doctor_id, slot_date, start_time, end_time, appointment_id=appointment_id
            )
            appointment = self.state_machine.create(
                appointment_id,
                patient_id,
                doctor_id,
                slot,
                breakdown,
                is_emergency=is_emergency,
                has_subscription=has_subscription,
            )
            txn = self.escrow.initiate(
                appointment_id,
                patient_id,
                doctor_id,
                breakdown.total_amount,
                platform_fee=breakdown.platform_fee,
            )
            appointment.escrow_txn_id = txn.id

        logger.info(
            f"📥 Booking {appointment_id}: patient {patient_id} with doctor {doctor_id} "
            f"on {slot_date} {start_time}-{end_time}, total {breakdown.total_amount}"
        )

        try:
            order_id = self.gateway.create_order(txn)
        except PaymentGatewayError as e:
            logger.error(f"❌ Payment order failed for booking {appointment_id}: {e}")
            self.escrow.mark_payment_failed(txn.id, str(e))
            self.state_machine.transition(
                appointment_id,
                AppointmentStatus.CANCELLED,
                actor=Actor.PAYMENT_GATEWAY,
                reason=f"Payment order failed: {e}",
            )
            raise PaymentFailed() from e

        self.escrow.attach_gateway_order(txn.id, order_id)
        self.notifier.notify(
            "appointment.requested",
            appointment_id=appointment_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            slot_date=str(slot_date),
            start_time=start_time,
            end_time=end_time,
            amount=breakdown.total_amount,
        )
        return BookingConfirmation(
            appointment_id=appointment_id,
            escrow_txn_id=txn.id,
            amount=breakdown.total_amount,
            fees=breakdown,
            gateway_order_id=order_id,
        )

    def respond_to_appointment(
        self,
        appointment_id: str,
        decision: DoctorDecision,
        doctor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Doctor accepts or rejects a REQUESTED appointment"""
        self._check_owner(appointment_id, doctor_id=doctor_id)
        target = (
            AppointmentStatus.ACCEPTED
            if DoctorDecision(decision) == DoctorDecision.ACCEPT
            else AppointmentStatus.REJECTED
        )
        return self.state_machine.transition(
            appointment_id, target, actor=Actor.DOCTOR, reason=reason
        )

    def schedule(self, appointment_id: str, doctor_id: Optional[str] = None) -> Appointment:
        self._check_owner(appointment_id, doctor_id=doctor_id)
        return self.state_machine.transition(
            appointment_id, AppointmentStatus.SCHEDULED, actor=Actor.DOCTOR
        )

    def complete(self, appointment_id: str, doctor_id: Optional[str] = None) -> Appointment:
        """Mark the consultation done; escrow release is scheduled after the dispute window"""
        self._check_owner(appointment_id, doctor_id=doctor_id)
        return self.state_machine.transition(
            appointment_id, AppointmentStatus.COMPLETED, actor=Actor.DOCTOR
        )

    def cancel(
        self,
        appointment_id: str,
        actor: Actor = Actor.PATIENT,
        reason: Optional[str] = None,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
    ) -> Appointment:
        """Patient or doctor cancellation; fails with InvalidTransition once terminal"""
        self._check_owner(appointment_id, patient_id=patient_id, doctor_id=doctor_id)
        return self.state_machine.transition(
            appointment_id, AppointmentStatus.CANCELLED, actor=actor, reason=reason
        )

    def raise_dispute(
        self,
        appointment_id: str,
        reason: str,
        patient_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        self._check_owner(appointment_id, patient_id=patient_id)
        return self.disputes.raise_dispute(
            reason, appointment_id=appointment_id, idempotency_key=idempotency_key
        )

    def release_early(
        self,
        appointment_id: str,
        released_by: Actor = Actor.PATIENT,
        patient_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> EscrowTransaction:
        """
        Pay the doctor before the dispute window ends.

        The patient confirms the consultation, or an operator releases on
        their behalf. Only COMPLETED appointments qualify; the status is
        re-read under the appointment lock so a concurrent cancellation wins
        or loses cleanly.
        """
        self._check_owner(appointment_id, patient_id=patient_id)
        snapshot = self.state_machine.get_appointment(appointment_id)
        txn_id = snapshot.escrow_txn_id or self.escrow.get_by_appointment(appointment_id).id

        with self.locks.hold(appointment_key(appointment_id), escrow_key(txn_id)):
            with atomic(self.db):
                appointment = self.repo.get_by_id(self.db, appointment_id, for_update=True)
                if appointment.status != AppointmentStatus.COMPLETED.value:
                    logger.warning(
                        f"⚠️ Early release refused for {appointment_id} in {appointment.status}"
                    )
                    raise ReleaseNotAllowed()
                txn = self.escrow.release(
                    txn_id, released_by=released_by, idempotency_key=idempotency_key
                )

        logger.info(f"✅ Escrow {txn.id} released early by {released_by.value}")
        self.notifier.notify(
            "escrow.released",
            txn_id=txn.id,
            appointment_id=txn.appointment_id,
            doctor_id=txn.doctor_id,
            amount=txn.doctor_payout,
            released_by=txn.released_by,
        )
        return txn

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self.state_machine.get_appointment(appointment_id)

    def get_history(self, appointment_id: str) -> list[AppointmentStatusHistory]:
        self.state_machine.get_appointment(appointment_id)
        return self.repo.get_history(self.db, appointment_id)

    def list_appointments(
        self,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
        limit: int = 100,
    ) -> list[Appointment]:
        return self.repo.list_appointments(self.db, patient_id, doctor_id, status, limit)

    def _check_owner(
        self,
        appointment_id: str,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
    ) -> None:
        """Callers that identify themselves may only act on their own appointments"""
        if patient_id is None and doctor_id is None:
            return
        appointment = self.state_machine.get_appointment(appointment_id)
        if patient_id is not None and appointment.patient_id != patient_id:
            logger.warning(f"🔒 Patient {patient_id} denied access to {appointment_id}")
            raise PermissionDenied()
        if doctor_id is not None and appointment.doctor_id != doctor_id:
            logger.warning(f"🔒 Doctor {doctor_id} denied access to {appointment_id}")
            raise PermissionDenied()
