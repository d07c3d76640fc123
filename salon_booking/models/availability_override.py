import uuid

from sqlalchemy import (
    Boolean,
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
from sqlalchemy.sql import func

from salon_booking.core.database import Base
from salon_booking.utils.intervals import Interval


class AvailabilityOverride(Base):
    """Time-bounded exception to staff or branch availability.

    ``is_available`` false is a blackout; true is an extra opening.
    """

    __tablename__ = "availability_overrides"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)

    # Scope: staff_id set for a staff override, otherwise branch-wide
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True)

    # Override details
    start_datetime = Column(DateTime, nullable=False)
    end_datetime = Column(DateTime, nullable=False)
    is_available = Column(Boolean, nullable=False, default=False)

    title = Column(String, nullable=True)
    reason = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "staff_id IS NOT NULL OR branch_id IS NOT NULL",
            name="check_override_scope",
        ),
        CheckConstraint(
            "end_datetime > start_datetime", name="check_override_end_after_start"
        ),
        Index("ix_availability_override_staff", "staff_id"),
        Index("ix_availability_override_branch", "branch_id"),
        Index("ix_availability_override_dates", "start_datetime", "end_datetime"),
    )

    @property
    def is_blackout(self) -> bool:
        return not self.is_available

    @property
    def interval(self) -> Interval:
        return Interval(self.start_datetime, self.end_datetime)

    def __repr__(self):
        kind = "extra-open" if self.is_available else "blackout"
        scope = "staff" if self.staff_id is not None else "branch"
        return (
            f"<AvailabilityOverride(id={self.id}, scope={scope}, {kind}, "
            f"{self.start_datetime} - {self.end_datetime}, active={self.is_active})>"
        )
