import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class StaffService(Base):
    """Which services a staff member offers."""

    __tablename__ = "staff_services"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)

    # Can staff perform this service right now
    is_available = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("staff_id", "service_id", name="uq_staff_service"),
    )

    def __repr__(self):
        return (
            f"<StaffService(id={self.id}, staff_id={self.staff_id}, "
            f"service_id={self.service_id}, available={self.is_available})>"
        )
