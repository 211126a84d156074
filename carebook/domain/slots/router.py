"""Slot router - FastAPI endpoints for doctor availability"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...enums import SlotStatus
from ...models import Slot
from .ledger import SlotLedger
from .schemas import AvailabilityRequest, ResetPeriodRequest, SlotResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slots", tags=["Slots"])


def get_slot_ledger(db: Session = Depends(get_db)) -> SlotLedger:
    """Dependency injection for SlotLedger"""
    return SlotLedger(db)


def to_slot_response(slot: Slot) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        doctorId=slot.doctor_id,
        slotDate=slot.slot_date,
        startTime=slot.start_time,
        endTime=slot.end_time,
        status=slot.status,
        appointmentId=slot.appointment_id,
        heldAt=slot.held_at,
        bookedAt=slot.booked_at,
        releasedAt=slot.released_at,
    )


@router.get("", response_model=list[SlotResponse])
def list_slots(
    doctor_id: str = Query(...),
    slot_date: Optional[date] = Query(None, alias="date"),
    status: Optional[SlotStatus] = Query(None),
    slots: SlotLedger = Depends(get_slot_ledger),
):
    """A doctor's slots, optionally for one date or state"""
    return [to_slot_response(s) for s in slots.list_slots(doctor_id, slot_date, status)]


@router.post("/availability", response_model=list[SlotResponse], status_code=201)
def publish_availability(
    data: AvailabilityRequest,
    slots: SlotLedger = Depends(get_slot_ledger),
):
    try:
        published = slots.publish_availability(
            data.doctorId,
            data.slotDate,
            [(w.startTime, w.endTime) for w in data.windows],
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return [to_slot_response(s) for s in published]


@router.post("/reset")
def reset_period(
    data: ResetPeriodRequest,
    slots: SlotLedger = Depends(get_slot_ledger),
):
    """Start a new availability period; held and booked slots are kept"""
    deleted = slots.reset_period(data.doctorId, data.beforeDate)
    return {"doctorId": data.doctorId, "deleted": deleted}
