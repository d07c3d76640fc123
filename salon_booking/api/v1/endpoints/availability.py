from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from salon_booking.api.deps.engine import get_booking_engine, to_http_error
from salon_booking.core.exceptions import BookingEngineError
from salon_booking.schemas.scheduling import AvailabilityCheck, SlotList
from salon_booking.services.booking_engine import BookingEngine
from salon_booking.utils.intervals import as_naive_utc

router = APIRouter()


@router.get("/slots", response_model=SlotList)
async def get_available_slots(
    branch_id: int = Query(..., description="Branch to book at"),
    service_ids: List[int] = Query(..., description="Services, performed back to back"),
    date: date = Query(..., description="Branch-local calendar date"),
    staff_id: Optional[int] = Query(None, description="Restrict to one staff member"),
    granularity_minutes: int = Query(30, gt=0, le=240, description="Step between starts"),
    include_unavailable: bool = Query(False, description="Also list occupied candidates"),
    engine: BookingEngine = Depends(get_booking_engine),
) -> SlotList:
    """
    Get bookable time slots for the requested services on a date.

    Slots respect branch opening hours, staff schedules, availability
    overrides, existing bookings and the branch's booking rules.
    """
    try:
        slots = await engine.get_available_slots(
            branch_id,
            service_ids,
            date,
            staff_id=staff_id,
            granularity_minutes=granularity_minutes,
            include_unavailable=include_unavailable,
        )
    except BookingEngineError as e:
        raise to_http_error(e)
    return SlotList(branch_id=branch_id, date=date, slots=slots)


@router.get("/check", response_model=AvailabilityCheck)
async def check_slot(
    staff_id: int = Query(..., description="Staff member"),
    start: datetime = Query(..., description="Start time (UTC when naive)"),
    duration_minutes: int = Query(..., description="Length of the booking"),
    engine: BookingEngine = Depends(get_booking_engine),
) -> AvailabilityCheck:
    """Check whether a staff member has no active booking in the interval."""
    start = as_naive_utc(start)
    try:
        available = await engine.is_slot_available(staff_id, start, duration_minutes)
    except BookingEngineError as e:
        raise to_http_error(e)
    return AvailabilityCheck(
        staff_id=staff_id, start=start, duration_minutes=duration_minutes, available=available
    )
