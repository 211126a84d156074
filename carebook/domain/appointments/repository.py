"""Appointment repository - Database operations for appointments"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...enums import Actor, AppointmentStatus
from ...models import Appointment, AppointmentStatusHistory


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_by_id(
        db: Session, appointment_id: str, for_update: bool = False
    ) -> Optional[Appointment]:
        """Get an appointment by ID, refreshed from the database"""
        query = db.query(Appointment).populate_existing().filter(Appointment.id == appointment_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def create(db: Session, **appointment_data) -> Appointment:
        """Create an appointment (flushed, not committed)"""
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def add_history(
        db: Session,
        appointment_id: str,
        from_status: Optional[AppointmentStatus],
        to_status: AppointmentStatus,
        actor: Actor,
        reason: Optional[str],
        at: datetime,
    ) -> AppointmentStatusHistory:
        entry = AppointmentStatusHistory(
            appointment_id=appointment_id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            actor=actor.value,
            reason=reason,
            created_at=at,
        )
        db.add(entry)
        return entry

    @staticmethod
    def get_history(db: Session, appointment_id: str) -> list[AppointmentStatusHistory]:
        return (
            db.query(AppointmentStatusHistory)
            .filter(AppointmentStatusHistory.appointment_id == appointment_id)
            .order_by(AppointmentStatusHistory.id.asc())
            .all()
        )

    @staticmethod
    def list_appointments(
        db: Session,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
        limit: int = 100,
    ) -> list[Appointment]:
        query = db.query(Appointment)
        if patient_id:
            query = query.filter(Appointment.patient_id == patient_id)
        if doctor_id:
            query = query.filter(Appointment.doctor_id == doctor_id)
        if status:
            query = query.filter(Appointment.status == status.value)
        return query.order_by(Appointment.created_at.desc()).limit(limit).all()

    @staticmethod
    def stale_requested_ids(db: Session, cutoff: datetime, limit: int) -> list[str]:
        """IDs of REQUESTED appointments created before the cutoff, oldest first"""
        rows = (
            db.query(Appointment.id)
            .filter(
                Appointment.status == AppointmentStatus.REQUESTED.value,
                Appointment.created_at < cutoff,
            )
            .order_by(Appointment.created_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]
