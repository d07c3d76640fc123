import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class Staff(Base):
    """Bookable staff member of a branch."""

    __tablename__ = "staff"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)
    phone = Column(String, nullable=True)

    # Skill tags, e.g. ["color", "balayage"]
    specializations = Column(JSON, nullable=False, default=list)

    # Booking settings
    is_bookable = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def skill_set(self) -> frozenset:
        return frozenset(self.specializations or ())

    @property
    def can_take_bookings(self) -> bool:
        return bool(self.is_active and self.is_bookable)

    def __repr__(self):
        return (
            f"<Staff(id={self.id}, name='{self.name}', branch_id={self.branch_id}, "
            f"bookable={self.is_bookable})>"
        )
