"""Slot domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...enums import SlotStatus
from ...utils.clock import parse_hhmm


class TimeWindow(BaseModel):
    startTime: str
    endTime: str

    @field_validator("startTime", "endTime")
    @classmethod
    def validate_time(cls, v):
        try:
            parse_hhmm(v)
        except ValueError as e:
            raise ValueError("Time must be in HH:MM format") from e
        return v

    @model_validator(mode="after")
    def validate_interval(self):
        if parse_hhmm(self.startTime) >= parse_hhmm(self.endTime):
            raise ValueError("startTime must be before endTime")
        return self


class AvailabilityRequest(BaseModel):
    """Schema for publishing a doctor's bookable windows on a date"""

    doctorId: str
    slotDate: date
    windows: list[TimeWindow]

    @field_validator("windows")
    @classmethod
    def validate_windows(cls, v):
        if not v:
            raise ValueError("At least one window is required")
        return v


class ResetPeriodRequest(BaseModel):
    """Drop unused slots dated before a new availability period"""

    doctorId: str
    beforeDate: date


class SlotResponse(BaseModel):
    """Schema for slot response"""

    id: str
    doctorId: str
    slotDate: date
    startTime: str
    endTime: str
    status: SlotStatus
    appointmentId: Optional[str] = None
    heldAt: Optional[datetime] = None
    bookedAt: Optional[datetime] = None
    releasedAt: Optional[datetime] = None
