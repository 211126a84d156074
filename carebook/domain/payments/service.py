"""Payment event processing - applies verified gateway webhooks to escrow and appointments"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...database import atomic
from ...enums import Actor, AppointmentStatus, EscrowStatus
from ...errors import EscrowNotFound
from ...locks import EntityLockRegistry, appointment_key, entity_locks, escrow_key
from ...models import EscrowTransaction
from ...services.notification_service import Notifier, default_notifier
from ..appointments.state_machine import AppointmentStateMachine
from ..escrow.ledger import EscrowLedger
from .gateway import PaymentGateway, default_gateway

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = ("payment.captured", "payment.succeeded")
FAILURE_EVENTS = ("payment.failed",)


class PaymentEventService:
    """
    Applies gateway events once their signature has been verified.

    payment.captured confirms the escrow hold (keyed by the webhook id, so a
    redelivered event is a no-op). payment.failed records the failure and
    cancels the appointment, which releases the slot; no funds are held.
    """

    def __init__(
        self,
        db: Session,
        locks: EntityLockRegistry = entity_locks,
        state_machine: Optional[AppointmentStateMachine] = None,
        gateway: PaymentGateway = default_gateway,
        notifier: Notifier = default_notifier,
    ):
        self.db = db
        self.locks = locks
        self.state_machine = state_machine or AppointmentStateMachine(
            db, locks=locks, gateway=gateway, notifier=notifier
        )
        self.escrow: EscrowLedger = self.state_machine.escrow
        self.gateway = gateway
        self.notifier = notifier

    def handle_event(self, webhook_id: str, event: dict) -> dict:
        event_type = event.get("type")
        data = event.get("data") or {}
        logger.info(f"🔔 Payment event id={webhook_id} type={event_type}")

        if event_type not in CAPTURE_EVENTS + FAILURE_EVENTS:
            logger.info(f"ℹ️ Ignoring payment event type {event_type}")
            return {"status": "ignored", "event": event_type, "webhook_id": webhook_id}

        txn = self._find_transaction(data)
        if event_type in CAPTURE_EVENTS:
            return self.handle_capture(webhook_id, txn, data.get("payment_id"))
        return self.handle_failure(webhook_id, txn, data.get("reason") or data.get("error"))

    def _find_transaction(self, data: dict) -> EscrowTransaction:
        txn_id = data.get("escrow_txn_id") or (data.get("metadata") or {}).get("escrow_txn_id")
        if txn_id:
            return self.escrow.get_transaction(txn_id)

        order_id = data.get("order_id")
        if order_id:
            txn = self.escrow.repo.get_by_gateway_order(self.db, order_id)
            if txn:
                return txn

        logger.warning(f"⚠️ Payment event does not match any escrow transaction: {data}")
        raise EscrowNotFound()

    def handle_capture(
        self, webhook_id: str, txn: EscrowTransaction, payment_id: Optional[str] = None
    ) -> dict:
        """
        INITIATED -> HELD. If the appointment was cancelled or rejected while
        the payment was in flight, the captured funds are refunded at once.
        """
        result = {"status": "processed", "webhook_id": webhook_id, "txn_id": txn.id}
        late_refund = None

        with self.locks.hold(appointment_key(txn.appointment_id), escrow_key(txn.id)):
            current = self.escrow.get_transaction(txn.id)
            if current.status != EscrowStatus.INITIATED.value and (
                payment_id is None or current.gateway_payment_id == payment_id
            ):
                logger.info(f"🔄 Capture for escrow {txn.id} already applied ({current.status})")
                result["status"] = "already_processed"
                result["escrow_status"] = current.status
                return result

            # Hold and late refund commit together; a failed refund leaves the
            # escrow INITIATED so a redelivered webhook retries both
            with atomic(self.db):
                held = self.escrow.confirm_hold(
                    txn.id, gateway_payment_id=payment_id, idempotency_key=f"webhook:{webhook_id}"
                )
                appointment = self.state_machine.get_appointment(txn.appointment_id)
                if (
                    held.status == EscrowStatus.HELD.value
                    and self.state_machine.is_terminal(appointment)
                    and appointment.status != AppointmentStatus.COMPLETED.value
                ):
                    logger.warning(
                        f"⚠️ Payment captured for {appointment.status} appointment "
                        f"{appointment.id}; refunding escrow {txn.id}"
                    )
                    late_refund = self.escrow.refund(
                        txn.id, idempotency_key=f"refund:{appointment.id}"
                    )
                    held = late_refund

        if late_refund is not None:
            try:
                self.gateway.refund(late_refund)
            except Exception as e:
                logger.error(f"❌ Gateway refund failed for escrow {late_refund.id}: {e}")
            self.notifier.notify(
                "escrow.refunded",
                txn_id=late_refund.id,
                appointment_id=late_refund.appointment_id,
                patient_id=late_refund.patient_id,
                amount=late_refund.amount,
            )
        else:
            self.notifier.notify(
                "escrow.held",
                txn_id=held.id,
                appointment_id=held.appointment_id,
                doctor_id=held.doctor_id,
                amount=held.amount,
            )

        result["escrow_status"] = held.status
        return result

    def handle_failure(
        self, webhook_id: str, txn: EscrowTransaction, reason: Optional[str] = None
    ) -> dict:
        """Record the failed payment and cancel the booking so the slot opens again"""
        result = {"status": "processed", "webhook_id": webhook_id, "txn_id": txn.id}
        reason = reason or "Payment failed"

        if txn.payment_failed_at is None:
            txn = self.escrow.mark_payment_failed(txn.id, reason)
        else:
            logger.info(f"🔄 Payment failure for escrow {txn.id} already recorded")
            result["status"] = "already_processed"

        appointment = self.state_machine.get_appointment(txn.appointment_id)
        if not self.state_machine.is_terminal(appointment):
            appointment = self.state_machine.transition(
                appointment.id,
                AppointmentStatus.CANCELLED,
                actor=Actor.PAYMENT_GATEWAY,
                reason=f"Payment failed: {reason}",
            )

        result["escrow_status"] = txn.status
        result["appointment_status"] = appointment.status
        return result
