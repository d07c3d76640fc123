import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Time,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class BookingRule(Base):
    """Policy constraint narrowing bookable slots for a branch or staff member."""

    __tablename__ = "booking_rules"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    name = Column(String(255), nullable=True)

    # Scope; staff_id null means the rule applies to the whole branch
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)

    # Constraints
    min_advance_hours = Column(Integer, nullable=True)
    max_advance_days = Column(Integer, nullable=True)
    restricted_start_time = Column(Time, nullable=True)  # branch-local
    restricted_end_time = Column(Time, nullable=True)

    # Effective date range (inclusive); null means open-ended
    effective_from = Column(Date, nullable=True)
    effective_until = Column(Date, nullable=True)

    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def has_restricted_window(self) -> bool:
        return self.restricted_start_time is not None and self.restricted_end_time is not None

    def is_effective_on(self, day) -> bool:
        if self.effective_from is not None and day < self.effective_from:
            return False
        if self.effective_until is not None and day > self.effective_until:
            return False
        return True

    def __repr__(self):
        return (
            f"<BookingRule(id={self.id}, branch_id={self.branch_id}, "
            f"staff_id={self.staff_id}, priority={self.priority}, active={self.is_active})>"
        )
