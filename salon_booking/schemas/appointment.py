from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

# Import enums from the model to avoid duplication
from salon_booking.models.appointment import AppointmentStatus
from salon_booking.utils.intervals import as_naive_utc


class AppointmentCreate(BaseModel):
    branch_id: int
    staff_id: int
    customer_id: int
    service_ids: List[int] = Field(..., min_length=1)
    start_datetime: datetime
    idempotency_key: Optional[str] = Field(None, max_length=128)
    # Front-desk override: book even if the staff member is already taken
    allow_overlap: bool = False
    customer_notes: Optional[str] = None
    internal_notes: Optional[str] = None

    @field_validator("start_datetime")
    @classmethod
    def normalize_start(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class AppointmentReschedule(BaseModel):
    new_start_datetime: datetime
    staff_id: Optional[int] = None
    reason: Optional[str] = None

    @field_validator("new_start_datetime")
    @classmethod
    def normalize_start(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class AppointmentStatusTransition(BaseModel):
    new_status: AppointmentStatus
    notes: Optional[str] = None


class AppointmentServiceItem(BaseModel):
    id: int
    service_id: int
    staff_id: Optional[int] = None
    service_name: str
    price: Decimal
    duration_minutes: int
    sequence: int

    model_config = {"from_attributes": True}


# Response schemas
class Appointment(BaseModel):
    id: int
    uuid: UUID
    confirmation_code: str
    branch_id: int
    staff_id: int
    customer_id: int
    start_datetime: datetime
    end_datetime: datetime
    total_duration_minutes: int
    status: AppointmentStatus
    previous_status: Optional[AppointmentStatus] = None
    rescheduled_from_datetime: Optional[datetime] = None
    reschedule_count: int
    reschedule_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    customer_notes: Optional[str] = None
    service_items: List[AppointmentServiceItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}
