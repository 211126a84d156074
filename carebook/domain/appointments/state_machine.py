"""
Appointment lifecycle

    REQUESTED -> ACCEPTED -> SCHEDULED -> COMPLETED
        |            |           |
        +-> REJECTED +-----------+-> CANCELLED

Every transition, whether driven by a patient, a doctor, the payment webhook
or a scheduler, goes through AppointmentStateMachine.transition(). It locks
the appointment together with its slot and escrow transaction, re-reads the
appointment, validates the move against ALLOWED_TRANSITIONS and applies the
slot/escrow side effects in the same database transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from ...config import ESCROW_RELEASE_DELAY_MINUTES
from ...database import atomic
from ...enums import TERMINAL_APPOINTMENT_STATUSES, Actor, AppointmentStatus, EscrowStatus
from ...errors import AppointmentNotFound, InvalidTransition
from ...locks import EntityLockRegistry, appointment_key, entity_locks, escrow_key, slot_key
from ...models import Appointment, EscrowTransaction, Slot
from ...services.notification_service import Notifier, default_notifier
from ...utils.clock import slot_end_datetime, utcnow
from ..escrow.ledger import EscrowLedger
from ..fees import FeeBreakdown
from ..payments.gateway import PaymentGateway, default_gateway
from ..slots.ledger import SlotLedger
from .repository import AppointmentRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset] = {
    AppointmentStatus.REQUESTED: frozenset(
        {AppointmentStatus.ACCEPTED, AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.ACCEPTED: frozenset(
        {AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.REJECTED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

# Timestamp column stamped when an appointment enters each state
_STATUS_TIMESTAMPS = {
    AppointmentStatus.ACCEPTED: "accepted_at",
    AppointmentStatus.SCHEDULED: "scheduled_at",
    AppointmentStatus.COMPLETED: "completed_at",
    AppointmentStatus.REJECTED: "rejected_at",
    AppointmentStatus.CANCELLED: "cancelled_at",
}

_REFUNDABLE = (EscrowStatus.HELD.value, EscrowStatus.DISPUTED.value)


def can_transition(
    current: Union[AppointmentStatus, str], target: Union[AppointmentStatus, str]
) -> bool:
    return AppointmentStatus(target) in ALLOWED_TRANSITIONS[AppointmentStatus(current)]


class AppointmentStateMachine:
    """Owns appointment state and orchestrates the slot and escrow ledgers"""

    def __init__(
        self,
        db: Session,
        slots: Optional[SlotLedger] = None,
        escrow: Optional[EscrowLedger] = None,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
        release_delay_minutes: int = ESCROW_RELEASE_DELAY_MINUTES,
        gateway: PaymentGateway = default_gateway,
        notifier: Notifier = default_notifier,
    ):
        self.db = db
        self.locks = locks
        self.clock = clock
        self.slots = slots or SlotLedger(db, locks=locks, clock=clock)
        self.escrow = escrow or EscrowLedger(db, locks=locks, clock=clock)
        self.release_delay = timedelta(minutes=release_delay_minutes)
        self.gateway = gateway
        self.notifier = notifier
        self.repo = AppointmentRepository()

    def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.repo.get_by_id(self.db, appointment_id)
        if not appointment:
            raise AppointmentNotFound()
        return appointment

    def create(
        self,
        appointment_id: str,
        patient_id: str,
        doctor_id: str,
        slot: Slot,
        fees: FeeBreakdown,
        is_emergency: bool = False,
        has_subscription: bool = False,
        actor: Actor = Actor.PATIENT,
    ) -> Appointment:
        """
        Record a new REQUESTED appointment against a slot it already holds.

        Called by booking intake inside the slot lock and transaction that
        reserved the slot.
        """
        now = self.clock()
        with atomic(self.db):
            appointment = self.repo.create(
                self.db,
                id=appointment_id,
                patient_id=patient_id,
                doctor_id=doctor_id,
                slot_id=slot.id,
                status=AppointmentStatus.REQUESTED.value,
                is_emergency=is_emergency,
                has_subscription=has_subscription,
                base_fee=fees.base_fee,
                consultation_fee=fees.consultation_fee,
                platform_fee=fees.platform_fee,
                total_amount=fees.total_amount,
                created_at=now,
            )
            self.repo.add_history(
                self.db, appointment.id, None, AppointmentStatus.REQUESTED, actor, None, now
            )
        logger.info(f"📥 Appointment {appointment_id} requested by patient {patient_id}")
        return appointment

    def transition(
        self,
        appointment_id: str,
        target: Union[AppointmentStatus, str],
        actor: Actor = Actor.SYSTEM,
        reason: Optional[str] = None,
        expected_from: Optional[AppointmentStatus] = None,
    ) -> Appointment:
        """
        Move an appointment to target, applying slot and escrow side effects.

        expected_from lets callers that decided on a stale read (schedulers,
        webhooks) insist on the state they saw; if another actor got there
        first the call fails with InvalidTransition instead of acting on a
        different state.
        """
        target = AppointmentStatus(target)
        snapshot = self.get_appointment(appointment_id)
        slot = snapshot.slot
        keys = [
            appointment_key(appointment_id),
            slot_key(slot.doctor_id, slot.slot_date, slot.start_time, slot.end_time),
        ]
        if snapshot.escrow_txn_id:
            keys.append(escrow_key(snapshot.escrow_txn_id))

        with self.locks.hold(*keys):
            with atomic(self.db):
                appointment = self.repo.get_by_id(self.db, appointment_id, for_update=True)
                current = AppointmentStatus(appointment.status)

                if expected_from is not None and current != expected_from:
                    logger.info(
                        f"⚠️ Appointment {appointment_id} is {current.value}, "
                        f"expected {expected_from.value}; not moving to {target.value}"
                    )
                    raise InvalidTransition(current.value, target.value)
                if not can_transition(current, target):
                    logger.warning(
                        f"❌ Invalid transition for appointment {appointment_id}: "
                        f"{current.value} -> {target.value}"
                    )
                    raise InvalidTransition(current.value, target.value)

                now = self.clock()
                refunded = self._apply_side_effects(appointment, target, now)

                appointment.status = target.value
                setattr(appointment, _STATUS_TIMESTAMPS[target], now)
                if target in (AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED) and reason:
                    appointment.cancellation_reason = reason
                appointment.updated_at = now
                self.repo.add_history(
                    self.db, appointment_id, current, target, actor, reason, now
                )

        logger.info(
            f"✅ Appointment {appointment_id}: {current.value} -> {target.value} by {actor.value}"
        )
        self._after_commit(appointment, current, target, actor, reason, refunded)
        return appointment

    def _apply_side_effects(
        self, appointment: Appointment, target: AppointmentStatus, now: datetime
    ) -> Optional[EscrowTransaction]:
        """Slot/escrow changes for a transition; returns the escrow txn if it was refunded"""
        if target == AppointmentStatus.SCHEDULED:
            self.slots.confirm(appointment.slot_id)
            return None

        if target in (AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED):
            self.slots.release(appointment.slot_id, appointment_id=appointment.id)
            if not appointment.escrow_txn_id:
                return None
            txn = self.escrow.get_transaction(appointment.escrow_txn_id)
            if txn.status in _REFUNDABLE:
                return self.escrow.refund(txn.id, idempotency_key=f"refund:{appointment.id}")
            logger.info(
                f"ℹ️ Escrow {txn.id} is {txn.status}; nothing to refund for {appointment.id}"
            )
            return None

        if target == AppointmentStatus.COMPLETED and appointment.escrow_txn_id:
            slot = self.slots.get_slot(appointment.slot_id)
            consultation_end = slot_end_datetime(slot.slot_date, slot.end_time)
            release_due_at = max(now, consultation_end) + self.release_delay
            self.escrow.schedule_release(appointment.escrow_txn_id, release_due_at)

        return None

    def _after_commit(
        self,
        appointment: Appointment,
        previous: AppointmentStatus,
        target: AppointmentStatus,
        actor: Actor,
        reason: Optional[str],
        refunded: Optional[EscrowTransaction],
    ) -> None:
        """External calls, made once the transition is durable and all locks are released"""
        if refunded is not None:
            try:
                self.gateway.refund(refunded)
            except Exception as e:
                # Ledger already shows REFUNDED; the gateway refund needs operator follow-up
                logger.error(f"❌ Gateway refund failed for escrow {refunded.id}: {e}")
            self.notifier.notify(
                "escrow.refunded",
                txn_id=refunded.id,
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                amount=refunded.amount,
            )

        self.notifier.notify(
            f"appointment.{target.value.lower()}",
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            previous_status=previous.value,
            actor=actor.value,
            reason=reason,
        )

    def is_terminal(self, appointment: Appointment) -> bool:
        return AppointmentStatus(appointment.status) in TERMINAL_APPOINTMENT_STATUSES
