import enum
import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class WaitlistStatus(enum.Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    BOOKED = "booked"
    EXPIRED = "expired"


class WaitlistEntry(Base):
    """Customer waiting for a slot to free up."""

    __tablename__ = "waitlist_entries"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    # Appointment this entry was created from, when a conflict was resolved
    source_appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)

    preferred_date = Column(Date, nullable=True)
    preferred_time = Column(String(5), nullable=True)  # "HH:MM" branch-local

    status = Column(String(20), nullable=False, default=WaitlistStatus.WAITING.value)
    expires_at = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return (
            f"<WaitlistEntry(id={self.id}, customer_id={self.customer_id}, "
            f"branch_id={self.branch_id}, status='{self.status}')>"
        )
