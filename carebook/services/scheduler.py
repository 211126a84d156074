"""
Time-driven transitions for appointments and escrow
Handles REQUESTED -> CANCELLED when a doctor never responds
Handles HELD -> RELEASED once the post-consultation dispute window has passed

Both passes only scan without locks and then push every item through the
same locked transition path interactive callers use. An item that changed
state in between (doctor accepted, patient disputed) fails its transition
and is skipped; anything unexpected is logged and retried on the next pass.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import (
    DOCTOR_RESPONSE_WINDOW_MINUTES,
    ESCROW_RELEASE_DELAY_MINUTES,
    SCHEDULER_BATCH_SIZE,
)
from ..domain.appointments.repository import AppointmentRepository
from ..domain.appointments.state_machine import AppointmentStateMachine
from ..domain.escrow.ledger import EscrowLedger
from ..enums import Actor, AppointmentStatus
from ..errors import BookingEngineError
from ..locks import EntityLockRegistry, entity_locks
from ..services.notification_service import Notifier, default_notifier
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class AutoExpiryScheduler:
    """Cancels REQUESTED appointments older than the doctor response window"""

    def __init__(
        self,
        db: Session,
        state_machine: Optional[AppointmentStateMachine] = None,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
        response_window_minutes: int = DOCTOR_RESPONSE_WINDOW_MINUTES,
        batch_size: int = SCHEDULER_BATCH_SIZE,
    ):
        self.db = db
        self.clock = clock
        self.state_machine = state_machine or AppointmentStateMachine(db, locks=locks, clock=clock)
        self.response_window = timedelta(minutes=response_window_minutes)
        self.batch_size = batch_size

    def run_once(self, now: Optional[datetime] = None) -> dict:
        """
        One scan of stale requests

        Returns:
            dict: Summary of the pass
        """
        now = now or self.clock()
        cutoff = now - self.response_window
        summary = {"scanned": 0, "expired": 0, "skipped": 0, "failed": 0}

        candidates = AppointmentRepository.stale_requested_ids(self.db, cutoff, self.batch_size)
        # End the read transaction so no snapshot is kept between scan and action
        self.db.rollback()
        summary["scanned"] = len(candidates)

        for appointment_id in candidates:
            try:
                self.state_machine.transition(
                    appointment_id,
                    AppointmentStatus.CANCELLED,
                    actor=Actor.SCHEDULER,
                    reason="Doctor did not respond in time",
                    expected_from=AppointmentStatus.REQUESTED,
                )
                summary["expired"] += 1
            except BookingEngineError as e:
                summary["skipped"] += 1
                logger.info(f"⏭️ Skipping expiry of {appointment_id}: {e}")
            except Exception as e:
                self.db.rollback()
                summary["failed"] += 1
                logger.error(f"❌ Auto-expiry failed for {appointment_id}: {e}")

        if summary["scanned"]:
            logger.info(f"📊 Auto-expiry summary: {summary}")
        else:
            logger.debug("ℹ️ No stale appointment requests")
        return summary


class EscrowReleaseScheduler:
    """Pays out held escrow whose release_due_at has passed"""

    def __init__(
        self,
        db: Session,
        escrow: Optional[EscrowLedger] = None,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
        notifier: Notifier = default_notifier,
        batch_size: int = SCHEDULER_BATCH_SIZE,
    ):
        self.db = db
        self.clock = clock
        self.escrow = escrow or EscrowLedger(db, locks=locks, clock=clock)
        self.notifier = notifier
        self.batch_size = batch_size

    def run_once(self, now: Optional[datetime] = None) -> dict:
        now = now or self.clock()
        summary = {"scanned": 0, "released": 0, "skipped": 0, "failed": 0}

        candidates = self.escrow.due_for_release(now, self.batch_size)
        self.db.rollback()
        summary["scanned"] = len(candidates)

        for txn_id in candidates:
            try:
                txn = self.escrow.release(
                    txn_id, released_by=Actor.SCHEDULER, idempotency_key=f"release:{txn_id}"
                )
            except BookingEngineError as e:
                summary["skipped"] += 1
                logger.info(f"⏭️ Skipping release of {txn_id}: {e}")
                continue
            except Exception as e:
                self.db.rollback()
                summary["failed"] += 1
                logger.error(f"❌ Escrow release failed for {txn_id}: {e}")
                continue

            summary["released"] += 1
            self.notifier.notify(
                "escrow.released",
                txn_id=txn.id,
                appointment_id=txn.appointment_id,
                doctor_id=txn.doctor_id,
                amount=txn.doctor_payout,
            )

        if summary["scanned"]:
            logger.info(f"📊 Escrow release summary: {summary}")
        else:
            logger.debug("ℹ️ No escrow due for release")
        return summary


def expire_stale_requests(db: Session, now: Optional[datetime] = None) -> dict:
    """Run a single auto-expiry pass with the configured policy"""
    return AutoExpiryScheduler(db).run_once(now)


def release_due_escrow(db: Session, now: Optional[datetime] = None) -> dict:
    """Run a single escrow release pass with the configured policy"""
    return EscrowReleaseScheduler(db).run_once(now)
