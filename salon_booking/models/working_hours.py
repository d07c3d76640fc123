import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Time,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class WeekDay(enum.Enum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class WorkingHours(Base):
    """Branch opening hours for one weekday."""

    __tablename__ = "working_hours"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)

    # Schedule details
    weekday = Column(Integer, nullable=False)  # WeekDay value, Monday == 0
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)
    is_closed = Column(Boolean, default=False, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("branch_id", "weekday", name="uq_working_hours_branch_weekday"),
    )

    @property
    def is_open(self) -> bool:
        return (
            not self.is_closed
            and self.open_time is not None
            and self.close_time is not None
        )

    def covers(self, start_time, end_time) -> bool:
        """Check if a wall-clock period lies within opening hours."""
        if not self.is_open:
            return False
        return self.open_time <= start_time and end_time <= self.close_time

    def __repr__(self):
        weekday_str = WeekDay(self.weekday).name if self.weekday is not None else "?"
        if not self.is_open:
            return f"<WorkingHours(branch_id={self.branch_id}, {weekday_str}: closed)>"
        return (
            f"<WorkingHours(branch_id={self.branch_id}, "
            f"{weekday_str}: {self.open_time}-{self.close_time})>"
        )
