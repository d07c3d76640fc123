import uuid

from sqlalchemy import Column, DateTime, Integer, String, Uuid
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class Customer(Base):
    """Customer contact details needed for booking notifications."""

    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()

    @property
    def contact(self) -> str:
        return self.phone or self.email or f"customer-{self.id}"

    def __repr__(self):
        return f"<Customer(id={self.id}, name='{self.full_name}')>"
