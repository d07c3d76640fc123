import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class AppointmentServiceItem(Base):
    """A service booked within an appointment, priced at booking time."""

    __tablename__ = "appointment_service_items"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)

    # Foreign keys
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    # Performing staff; differs from the appointment's staff after a split
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)

    # Service details at time of booking (for historical accuracy)
    service_name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    duration_minutes = Column(Integer, nullable=False)  # includes buffers
    sequence = Column(Integer, default=0, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="service_items")

    def __repr__(self):
        return (
            f"<AppointmentServiceItem(id={self.id}, appointment_id={self.appointment_id}, "
            f"service_id={self.service_id}, staff_id={self.staff_id}, "
            f"duration={self.duration_minutes}min)>"
        )
