import enum
import uuid
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
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


class ConflictType(enum.Enum):
    DOUBLE_BOOKING = "double_booking"
    OVERLAPPING = "overlapping"
    STAFF_UNAVAILABLE = "staff_unavailable"
    BRANCH_CLOSED = "branch_closed"


class ConflictStatus(enum.Enum):
    PENDING = "pending"
    AUTO_RESOLVED = "auto_resolved"


class BookingConflict(Base):
    """A detected scheduling conflict around a source appointment.

    ``conflicting_appointment_id`` is set for overlap conflicts and null for
    conflicts against schedules or branch hours. Once AUTO_RESOLVED a record is
    never modified again.
    """

    __tablename__ = "booking_conflicts"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)

    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    conflicting_appointment_id = Column(
        Integer, ForeignKey("appointments.id"), nullable=True, index=True
    )

    conflict_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=ConflictStatus.PENDING.value)

    # {"slots": [{"start", "end", "staffId"}], "generatedAt": ...}
    suggested_alternatives = Column(JSON, nullable=True)

    # Resolution bookkeeping
    auto_resolution_attempts = Column(Integer, default=0, nullable=False)
    resolved_strategy = Column(String(40), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    # Escalation
    escalated = Column(Boolean, default=False, nullable=False)
    escalated_at = Column(DateTime, nullable=True)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_booking_conflicts_status", "status"),
    )

    @property
    def type(self) -> ConflictType:
        return ConflictType(self.conflict_type)

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.AUTO_RESOLVED.value

    def involves(self, appointment_id: int) -> bool:
        return appointment_id in (self.appointment_id, self.conflicting_appointment_id)

    def other_party(self, appointment_id: int) -> Optional[int]:
        """The appointment on the other side of the pair, if any."""
        if appointment_id == self.appointment_id:
            return self.conflicting_appointment_id
        if appointment_id == self.conflicting_appointment_id:
            return self.appointment_id
        return None

    def __repr__(self):
        return (
            f"<BookingConflict(id={self.id}, type='{self.conflict_type}', "
            f"status='{self.status}', appointment_id={self.appointment_id}, "
            f"conflicting_appointment_id={self.conflicting_appointment_id})>"
        )
