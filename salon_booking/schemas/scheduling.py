from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from salon_booking.utils.intervals import as_naive_utc


class TimeSlot(BaseModel):
    """A candidate appointment time for one staff member. Never persisted."""

    model_config = {"frozen": True}

    start: datetime
    end: datetime
    staff_id: int
    available: bool = True

    @property
    def key(self) -> tuple:
        return (self.start, self.end, self.staff_id)


class SlotQuery(BaseModel):
    branch_id: int
    service_ids: List[int] = Field(..., min_length=1)
    date: date
    staff_id: Optional[int] = None
    granularity_minutes: int = Field(30, gt=0, le=240)
    include_unavailable: bool = False


class SlotList(BaseModel):
    branch_id: int
    date: date
    slots: List[TimeSlot] = Field(default_factory=list)


class AvailabilityCheck(BaseModel):
    staff_id: int
    start: datetime
    duration_minutes: int
    available: bool

    @field_validator("start")
    @classmethod
    def normalize_start(cls, v: datetime) -> datetime:
        return as_naive_utc(v)
