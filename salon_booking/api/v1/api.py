from fastapi import APIRouter

from salon_booking.api.v1.endpoints import appointments, availability, conflicts

api_router = APIRouter()

# Slot search and availability checks
api_router.include_router(availability.router, prefix="/availability", tags=["availability"])

# Appointment booking and rescheduling
api_router.include_router(
    appointments.router, prefix="/appointments", tags=["appointments"]
)

# Conflict resolution and escalation
api_router.include_router(conflicts.router, prefix="/conflicts", tags=["conflicts"])
