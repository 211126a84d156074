"""Slot repository - Database operations for slots"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...enums import SlotStatus
from ...models import Appointment, Slot


def _dialect_insert(db: Session):
    """Dialect insert construct supporting ON CONFLICT DO NOTHING, if any"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    return None


class SlotRepository:
    """Repository for slot database operations"""

    @staticmethod
    def get_by_id(db: Session, slot_id: str, for_update: bool = False) -> Optional[Slot]:
        """Get a slot by ID, refreshed from the database"""
        query = db.query(Slot).populate_existing().filter(Slot.id == slot_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def get_by_identity(
        db: Session,
        doctor_id: str,
        slot_date: date,
        start_time: str,
        end_time: str,
        for_update: bool = False,
    ) -> Optional[Slot]:
        """Get a slot by its (doctor, date, start, end) identity"""
        query = (
            db.query(Slot)
            .populate_existing()
            .filter(
                Slot.doctor_id == doctor_id,
                Slot.slot_date == slot_date,
                Slot.start_time == start_time,
                Slot.end_time == end_time,
            )
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def ensure_exists(
        db: Session, doctor_id: str, slot_date: date, start_time: str, end_time: str
    ) -> None:
        """Materialise an OPEN slot row for the identity unless one already exists"""
        values = {
            "doctor_id": doctor_id,
            "slot_date": slot_date,
            "start_time": start_time,
            "end_time": end_time,
            "status": SlotStatus.OPEN.value,
        }
        insert = _dialect_insert(db)
        if insert is not None:
            # Concurrent first reservations from other processes cannot create duplicates
            stmt = insert(Slot).values(**values).on_conflict_do_nothing(
                index_elements=["doctor_id", "slot_date", "start_time", "end_time"]
            )
            db.execute(stmt)
            return

        if not SlotRepository.get_by_identity(db, doctor_id, slot_date, start_time, end_time):
            db.add(Slot(**values))
            db.flush()

    @staticmethod
    def compare_and_set(
        db: Session,
        slot_id: str,
        expected: Iterable[SlotStatus],
        values: dict,
        appointment_id: Optional[str] = None,
    ) -> bool:
        """
        Conditionally update a slot in a single UPDATE statement.

        Returns True only if the row was in one of the expected states (and,
        when given, held by appointment_id) at the moment of the update.
        """
        query = db.query(Slot).filter(
            Slot.id == slot_id, Slot.status.in_([s.value for s in expected])
        )
        if appointment_id is not None:
            query = query.filter(Slot.appointment_id == appointment_id)
        updated = query.update(values, synchronize_session=False)
        return updated == 1

    @staticmethod
    def list_slots(
        db: Session,
        doctor_id: str,
        slot_date: Optional[date] = None,
        status: Optional[SlotStatus] = None,
    ) -> list[Slot]:
        """List a doctor's slots, optionally for one date or state"""
        query = db.query(Slot).filter(Slot.doctor_id == doctor_id)
        if slot_date is not None:
            query = query.filter(Slot.slot_date == slot_date)
        if status is not None:
            query = query.filter(Slot.status == status.value)
        return query.order_by(Slot.slot_date.asc(), Slot.start_time.asc()).all()

    @staticmethod
    def delete_open_before(db: Session, doctor_id: str, before_date: date) -> int:
        """Delete OPEN slots of past periods that no appointment ever referenced"""
        referenced = select(Appointment.slot_id)
        return (
            db.query(Slot)
            .filter(
                Slot.doctor_id == doctor_id,
                Slot.slot_date < before_date,
                Slot.status == SlotStatus.OPEN.value,
                Slot.id.notin_(referenced),
            )
            .delete(synchronize_session=False)
        )
