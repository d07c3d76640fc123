import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class Service(Base):
    """Catalog service with duration, pricing, and buffer management."""

    __tablename__ = "services"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True)  # null: all branches
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Service details
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    # Buffer management
    buffer_before_minutes = Column(Integer, default=0, nullable=False)  # Setup/prep time
    buffer_after_minutes = Column(Integer, default=0, nullable=False)  # Cleanup time

    # Skills a staff member needs for this service
    required_specializations = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def buffer_minutes(self) -> int:
        return (self.buffer_before_minutes or 0) + (self.buffer_after_minutes or 0)

    @property
    def total_duration_minutes(self) -> int:
        """Total time including buffers."""
        return self.duration_minutes + self.buffer_minutes

    def __repr__(self):
        return (
            f"<Service(id={self.id}, name='{self.name}', "
            f"duration={self.duration_minutes}min, price=${self.price})>"
        )
