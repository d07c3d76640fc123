import enum
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from salon_booking.core.database import Base
from salon_booking.utils.intervals import Interval, utcnow


class AppointmentStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


# Statuses that no longer hold a staff member's time
RELEASED_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value)

TERMINAL_STATUSES = (
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
)

_OPEN_TARGETS = [
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
]

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: _OPEN_TARGETS,
    AppointmentStatus.CONFIRMED: [s for s in _OPEN_TARGETS if s != AppointmentStatus.CONFIRMED],
    AppointmentStatus.RESCHEDULED: _OPEN_TARGETS,
    AppointmentStatus.CANCELLED: [],  # Final state
    AppointmentStatus.COMPLETED: [],  # Final state
    AppointmentStatus.NO_SHOW: [],  # Final state
}


def generate_confirmation_code() -> str:
    return f"SB-{secrets.token_hex(4).upper()}"


class Appointment(Base):
    """Booked appointment of one customer with one staff member."""

    __tablename__ = "appointments"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    confirmation_code = Column(
        String(20), unique=True, nullable=False, default=generate_confirmation_code
    )
    idempotency_key = Column(String(128), unique=True, nullable=True)

    # Appointment participants
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)

    # Scheduling details (naive UTC)
    start_datetime = Column(DateTime, nullable=False, index=True)
    end_datetime = Column(DateTime, nullable=False)
    total_duration_minutes = Column(Integer, nullable=False)

    # Status management
    status = Column(
        String(20), nullable=False, default=AppointmentStatus.PENDING.value, index=True
    )
    previous_status = Column(String(20), nullable=True)
    status_changed_at = Column(DateTime, nullable=True)

    # Cancellation management
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Rescheduling
    rescheduled_from_datetime = Column(DateTime, nullable=True)
    reschedule_count = Column(Integer, default=0, nullable=False)
    reschedule_reason = Column(Text, nullable=True)

    customer_notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("end_datetime > start_datetime", name="check_end_after_start"),
        CheckConstraint("total_duration_minutes > 0", name="check_positive_duration"),
        CheckConstraint("reschedule_count >= 0", name="check_non_negative_reschedule_count"),
        Index("ix_appointments_staff_start", "staff_id", "start_datetime"),
    )

    service_items = relationship(
        "AppointmentServiceItem",
        back_populates="appointment",
        cascade="all, delete-orphan",
        order_by="AppointmentServiceItem.sequence",
        lazy="selectin",
    )

    # Status transition methods
    def can_transition_to(self, new_status: AppointmentStatus) -> bool:
        """Check if appointment can transition to the new status."""
        current = AppointmentStatus(self.status)
        return new_status in ALLOWED_TRANSITIONS.get(current, [])

    def transition_to(self, new_status: AppointmentStatus, notes: Optional[str] = None) -> bool:
        """Transition appointment to new status with validation."""
        if not self.can_transition_to(new_status):
            return False

        now = utcnow()
        self.previous_status = self.status
        self.status = new_status.value
        self.status_changed_at = now

        if new_status == AppointmentStatus.CANCELLED:
            self.cancelled_at = now
            if notes:
                self.cancellation_reason = notes

        return True

    def move_to(self, new_start: datetime, duration_minutes: Optional[int] = None) -> None:
        """Shift the appointment, keeping ``end == start + total_duration``."""
        minutes = duration_minutes or self.total_duration_minutes
        Interval.of(new_start, minutes)
        if new_start != self.start_datetime:
            self.rescheduled_from_datetime = self.start_datetime
            self.reschedule_count = (self.reschedule_count or 0) + 1
        self.start_datetime = new_start
        self.total_duration_minutes = minutes
        self.end_datetime = new_start + timedelta(minutes=minutes)

    @property
    def interval(self) -> Interval:
        return Interval(self.start_datetime, self.end_datetime)

    @property
    def is_active(self) -> bool:
        """Active appointments hold the staff member's time."""
        return self.status not in RELEASED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return AppointmentStatus(self.status) in TERMINAL_STATUSES

    @property
    def service_ids(self) -> list[int]:
        return [item.service_id for item in self.service_items]

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, status='{self.status}', "
            f"start='{self.start_datetime}', staff_id={self.staff_id}, "
            f"customer_id={self.customer_id})>"
        )
