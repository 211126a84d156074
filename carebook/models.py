import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .enums import AppointmentStatus, EscrowStatus, SlotStatus
from .utils.clock import utcnow


def generate_id(prefix: str):
    """Build a default factory for prefixed UUID primary keys"""

    def _generate() -> str:
        return f"{prefix}_{uuid.uuid4().hex}"

    return _generate


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        # Slot identity: at most one row, and therefore one claim, per interval
        UniqueConstraint(
            "doctor_id", "slot_date", "start_time", "end_time", name="uq_slot_identity"
        ),
        Index("ix_slots_doctor_date", "doctor_id", "slot_date"),
    )

    id = Column(String(40), primary_key=True, default=generate_id("slot"))
    doctor_id = Column(String(64), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)  # "HH:MM"
    status = Column(String(10), default=SlotStatus.OPEN.value, nullable=False)
    # Appointment currently holding the slot; cleared on release
    appointment_id = Column(String(40), nullable=True)
    held_at = Column(DateTime, nullable=True)
    booked_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (Index("ix_appointments_status_created", "status", "created_at"),)

    id = Column(String(40), primary_key=True, default=generate_id("appt"))
    patient_id = Column(String(64), index=True, nullable=False)
    doctor_id = Column(String(64), index=True, nullable=False)
    slot_id = Column(String(40), ForeignKey("slots.id"), nullable=False)
    status = Column(String(12), default=AppointmentStatus.REQUESTED.value, nullable=False)
    is_emergency = Column(Boolean, default=False, nullable=False)
    has_subscription = Column(Boolean, default=False, nullable=False)
    # Fee breakdown as computed at booking time (integer currency units)
    base_fee = Column(Integer, nullable=False)
    consultation_fee = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)
    escrow_txn_id = Column(String(40), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    slot = relationship("Slot")
    history = relationship(
        "AppointmentStatusHistory",
        back_populates="appointment",
        order_by="AppointmentStatusHistory.id",
    )


class AppointmentStatusHistory(Base):
    """Append-only audit trail of appointment transitions"""

    __tablename__ = "appointment_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = Column(String(40), ForeignKey("appointments.id"), index=True, nullable=False)
    from_status = Column(String(12), nullable=True)  # None for creation
    to_status = Column(String(12), nullable=False)
    actor = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    appointment = relationship("Appointment", back_populates="history")


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"

    id = Column(String(40), primary_key=True, default=generate_id("txn"))
    # Exactly one escrow transaction per appointment
    appointment_id = Column(String(40), unique=True, nullable=False)
    patient_id = Column(String(64), index=True, nullable=False)
    doctor_id = Column(String(64), index=True, nullable=False)
    amount = Column(Integer, nullable=False)  # amount = doctor_payout + platform_fee
    platform_fee = Column(Integer, nullable=False)
    doctor_payout = Column(Integer, nullable=False)
    status = Column(String(10), default=EscrowStatus.INITIATED.value, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    # Gateway linkage (non-PCI references only)
    gateway_order_id = Column(String(64), nullable=True)
    gateway_payment_id = Column(String(64), nullable=True)
    payment_failed_at = Column(DateTime, nullable=True)
    payment_failure_reason = Column(Text, nullable=True)
    # Earliest time the release scheduler may pay out (set on consultation completion)
    release_due_at = Column(DateTime, nullable=True, index=True)
    released_by = Column(String(20), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolution = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    held_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EscrowOperation(Base):
    """Idempotency record: one row per applied escrow operation key"""

    __tablename__ = "escrow_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(128), unique=True, nullable=False)
    txn_id = Column(String(40), ForeignKey("escrow_transactions.id"), index=True, nullable=False)
    operation = Column(String(20), nullable=False)
    resulting_status = Column(String(10), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
