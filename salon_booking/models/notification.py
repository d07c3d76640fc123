import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.sql import func

from salon_booking.core.database import Base


class NotificationPriority(enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationChannel(enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class Notification(Base):
    """Record of a notification handed to the dispatcher."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)

    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    conflict_id = Column(Integer, ForeignKey("booking_conflicts.id"), nullable=True, index=True)

    recipient = Column(String(255), nullable=False)
    channel = Column(String(20), nullable=False, default=NotificationChannel.IN_APP.value)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(10), nullable=False, default=NotificationPriority.NORMAL.value)
    action_url = Column(String(500), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return (
            f"<Notification(id={self.id}, recipient='{self.recipient}', "
            f"priority='{self.priority}', title='{self.title}')>"
        )
