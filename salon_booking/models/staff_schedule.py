import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Time,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class StaffSchedule(Base):
    """A staff member's working window on one calendar date."""

    __tablename__ = "staff_schedules"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)

    # Branch-local wall-clock times
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("staff_id", "date", name="uq_staff_schedule_staff_date"),
    )

    def __repr__(self):
        return (
            f"<StaffSchedule(staff_id={self.staff_id}, date={self.date}, "
            f"{self.start_time}-{self.end_time}, available={self.is_available})>"
        )
