# Import all models to ensure they are registered with SQLAlchemy
from . import (
    appointment,
    appointment_item,
    availability_override,
    booking_rule,
    branch,
    conflict,
    customer,
    notification,
    service,
    staff,
    staff_schedule,
    staff_service,
    waitlist,
    working_hours,
)

__all__ = [
    "appointment",
    "appointment_item",
    "availability_override",
    "booking_rule",
    "branch",
    "conflict",
    "customer",
    "notification",
    "service",
    "staff",
    "staff_schedule",
    "staff_service",
    "waitlist",
    "working_hours",
]
