"""Slot ledger - sole owner of slot availability state"""

import logging
from datetime import date
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from ...database import atomic
from ...enums import SlotStatus
from ...errors import InvalidSlotState, SlotNotFound, SlotUnavailable
from ...locks import EntityLockRegistry, entity_locks, slot_key
from ...models import Slot
from ...utils.clock import parse_hhmm, utcnow
from .repository import SlotRepository

logger = logging.getLogger(__name__)


def validate_interval(start_time: str, end_time: str) -> None:
    try:
        start, end = parse_hhmm(start_time), parse_hhmm(end_time)
    except ValueError as e:
        raise ValueError(f"Slot times must be HH:MM, got {start_time!r}-{end_time!r}") from e
    if start >= end:
        raise ValueError(f"Slot start {start_time} must be before end {end_time}")


class SlotLedger:
    """
    Grants and releases exclusive holds on (doctor, date, start, end) slots.

    OPEN -> HELD is a compare-and-swap: a single UPDATE ... WHERE status='OPEN'
    executed under the per-slot lock. Whichever caller's update matches the row
    wins; everyone else gets SlotUnavailable. There is no retry loop.
    """

    def __init__(
        self,
        db: Session,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.locks = locks
        self.clock = clock
        self.repo = SlotRepository()

    def _lock_for(self, slot: Slot):
        return self.locks.hold(
            slot_key(slot.doctor_id, slot.slot_date, slot.start_time, slot.end_time)
        )

    def get_slot(self, slot_id: str) -> Slot:
        slot = self.repo.get_by_id(self.db, slot_id)
        if not slot:
            raise SlotNotFound()
        return slot

    def reserve(
        self,
        doctor_id: str,
        slot_date: date,
        start_time: str,
        end_time: str,
        appointment_id: Optional[str] = None,
    ) -> Slot:
        """OPEN -> HELD; raises SlotUnavailable unless this call wins the slot"""
        validate_interval(start_time, end_time)
        key = slot_key(doctor_id, slot_date, start_time, end_time)

        with self.locks.hold(key), atomic(self.db):
            self.repo.ensure_exists(self.db, doctor_id, slot_date, start_time, end_time)
            slot = self.repo.get_by_identity(
                self.db, doctor_id, slot_date, start_time, end_time, for_update=True
            )
            won = self.repo.compare_and_set(
                self.db,
                slot.id,
                expected=[SlotStatus.OPEN],
                values={
                    "status": SlotStatus.HELD.value,
                    "appointment_id": appointment_id,
                    "held_at": self.clock(),
                    "booked_at": None,
                    "released_at": None,
                },
            )
            if not won:
                logger.info(f"⚠️ Slot {key} unavailable (currently {slot.status})")
                raise SlotUnavailable()

            logger.info(f"🔒 Slot {slot.id} held for appointment {appointment_id}")
            return self.repo.get_by_id(self.db, slot.id)

    def confirm(self, slot_id: str) -> Slot:
        """HELD -> BOOKED; raises InvalidSlotState from any other state"""
        slot = self.get_slot(slot_id)
        with self._lock_for(slot), atomic(self.db):
            won = self.repo.compare_and_set(
                self.db,
                slot_id,
                expected=[SlotStatus.HELD],
                values={"status": SlotStatus.BOOKED.value, "booked_at": self.clock()},
            )
            if not won:
                current = self.repo.get_by_id(self.db, slot_id)
                raise InvalidSlotState(f"Slot {slot_id} is {current.status}, expected HELD")

            logger.info(f"✅ Slot {slot_id} booked")
            return self.repo.get_by_id(self.db, slot_id)

    def release(self, slot_id: str, appointment_id: Optional[str] = None) -> Slot:
        """
        HELD|BOOKED -> OPEN. Releasing an OPEN slot is a no-op.

        With appointment_id, only a hold owned by that appointment is released,
        so a late release can never free somebody else's reservation.
        """
        slot = self.get_slot(slot_id)
        with self._lock_for(slot), atomic(self.db):
            released = self.repo.compare_and_set(
                self.db,
                slot_id,
                expected=[SlotStatus.HELD, SlotStatus.BOOKED],
                values={
                    "status": SlotStatus.OPEN.value,
                    "appointment_id": None,
                    "released_at": self.clock(),
                },
                appointment_id=appointment_id,
            )
            current = self.repo.get_by_id(self.db, slot_id)
            if released:
                logger.info(f"🔓 Slot {slot_id} released")
            elif current.status != SlotStatus.OPEN.value:
                logger.warning(
                    f"⚠️ Slot {slot_id} not released: held by {current.appointment_id}, "
                    f"not {appointment_id}"
                )
            return current

    def publish_availability(
        self, doctor_id: str, slot_date: date, windows: Iterable[tuple[str, str]]
    ) -> list[Slot]:
        """Create OPEN slots for a doctor's availability; existing slots are left as they are"""
        windows = list(windows)
        for start_time, end_time in windows:
            validate_interval(start_time, end_time)

        with atomic(self.db):
            for start_time, end_time in windows:
                self.repo.ensure_exists(self.db, doctor_id, slot_date, start_time, end_time)

        logger.info(f"📅 Published {len(windows)} slot(s) for doctor {doctor_id} on {slot_date}")
        return self.repo.list_slots(self.db, doctor_id, slot_date)

    def reset_period(self, doctor_id: str, before_date: date) -> int:
        """Drop unused OPEN slots dated before the new availability period"""
        with atomic(self.db):
            deleted = self.repo.delete_open_before(self.db, doctor_id, before_date)
        logger.info(f"🧹 Reset {deleted} stale slot(s) for doctor {doctor_id} before {before_date}")
        return deleted

    def list_slots(
        self,
        doctor_id: str,
        slot_date: Optional[date] = None,
        status: Optional[SlotStatus] = None,
    ) -> list[Slot]:
        return self.repo.list_slots(self.db, doctor_id, slot_date, status)
