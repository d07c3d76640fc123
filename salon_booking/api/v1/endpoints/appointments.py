from typing import List

from fastapi import APIRouter, Depends, Query, status

from salon_booking.api.deps.engine import get_booking_engine, to_http_error
from salon_booking.core.exceptions import BookingEngineError
from salon_booking.schemas.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentStatusTransition,
)
from salon_booking.schemas.conflict import Conflict, DetectionContext
from salon_booking.services.booking_engine import BookingEngine

router = APIRouter()


@router.post("/", response_model=Appointment, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    appointment_data: AppointmentCreate,
    engine: BookingEngine = Depends(get_booking_engine),
) -> Appointment:
    """
    Book an appointment.

    The slot is re-checked inside the booking transaction; if another booking
    took it first the request fails with 409. Sending the same idempotency key
    again returns the original appointment.
    """
    try:
        appointment = await engine.create_appointment(appointment_data)
    except BookingEngineError as e:
        raise to_http_error(e)
    return Appointment.model_validate(appointment)


@router.get("/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: int, engine: BookingEngine = Depends(get_booking_engine)
) -> Appointment:
    try:
        appointment = await engine.ledger.get(appointment_id)
    except BookingEngineError as e:
        raise to_http_error(e)
    return Appointment.model_validate(appointment)


@router.post("/{appointment_id}/reschedule", response_model=Appointment)
async def reschedule_appointment(
    appointment_id: int,
    reschedule_data: AppointmentReschedule,
    engine: BookingEngine = Depends(get_booking_engine),
) -> Appointment:
    """Move an appointment to a new start time, optionally to another staff member."""
    try:
        appointment = await engine.reschedule_appointment(
            appointment_id,
            reschedule_data.new_start_datetime,
            staff_id=reschedule_data.staff_id,
            reason=reschedule_data.reason,
        )
    except BookingEngineError as e:
        raise to_http_error(e)
    return Appointment.model_validate(appointment)


@router.post("/{appointment_id}/status", response_model=Appointment)
async def transition_appointment_status(
    appointment_id: int,
    transition: AppointmentStatusTransition,
    engine: BookingEngine = Depends(get_booking_engine),
) -> Appointment:
    """Move an appointment through its lifecycle; cancellation is a soft delete."""
    try:
        appointment = await engine.ledger.transition_status(
            appointment_id, transition.new_status, notes=transition.notes
        )
    except BookingEngineError as e:
        raise to_http_error(e)
    return Appointment.model_validate(appointment)


@router.post("/{appointment_id}/conflicts/detect", response_model=List[Conflict])
async def detect_conflicts(
    appointment_id: int,
    context: DetectionContext = Query(DetectionContext.BOOKING),
    engine: BookingEngine = Depends(get_booking_engine),
) -> List[Conflict]:
    """Detect and record conflicts of an appointment with others and with schedules."""
    try:
        conflicts = await engine.detect_conflicts(appointment_id, context)
    except BookingEngineError as e:
        raise to_http_error(e)
    return [Conflict.model_validate(conflict) for conflict in conflicts]
