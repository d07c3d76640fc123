import uuid
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text, Uuid
from sqlalchemy.sql import func

from salon_booking.core.database import Base
from salon_booking.schemas.branch import BranchSettings


class Branch(Base):
    """Salon branch with timezone and operating policy settings."""

    __tablename__ = "branches"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    salon_id = Column(Integer, nullable=True, index=True)  # groups sibling branches
    name = Column(String(255), nullable=False)

    # Location & timezone
    address = Column(Text, nullable=True)
    timezone = Column(String(50), nullable=False, default="UTC")

    # Operating policy
    auto_resolve_conflicts = Column(Boolean, default=False, nullable=False)
    tax_rate = Column(Numeric(5, 4), default=Decimal("0"), nullable=False)
    management_channel = Column(String(255), nullable=True)
    holiday_country = Column(String(2), nullable=True)  # ISO code, e.g. "US"

    is_active = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def settings(self) -> BranchSettings:
        return BranchSettings(
            auto_resolve_conflicts=bool(self.auto_resolve_conflicts),
            tax_rate=self.tax_rate if self.tax_rate is not None else Decimal("0"),
            management_channel=self.management_channel,
            holiday_country=self.holiday_country,
        )

    @property
    def management_recipient(self) -> str:
        return self.management_channel or f"branch-{self.id}-managers"

    def __repr__(self):
        return f"<Branch(id={self.id}, name='{self.name}', tz={self.timezone})>"
