from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.exceptions import NotFound
from salon_booking.models.appointment import Appointment
from salon_booking.models.branch import Branch
from salon_booking.models.conflict import BookingConflict
from salon_booking.models.notification import (
    Notification,
    NotificationChannel,
    NotificationPriority,
)
from salon_booking.services.notification_service import NotificationDispatcher
from salon_booking.utils.intervals import utcnow

logger = structlog.get_logger(__name__)

ESCALATION_NOTE = "Requires manual intervention - auto-resolution failed"


async def load_conflict(db: AsyncSession, conflict_id: int) -> BookingConflict:
    """Fresh conflict state from the store."""
    result = await db.execute(
        select(BookingConflict)
        .where(BookingConflict.id == conflict_id)
        .execution_options(populate_existing=True)
    )
    conflict = result.scalar_one_or_none()
    if conflict is None:
        raise NotFound("Conflict", conflict_id)
    return conflict


class EscalationManager:
    """Hands conflicts that automation could not settle to branch management."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.clock = clock

    async def escalate_to_manual(self, conflict_id: int) -> None:
        """Flag the conflict for manual review.

        Only the first escalation records and dispatches the high-priority
        notification; repeated calls just rewrite the notes. The conflict stays
        PENDING, and resolved conflicts are left alone.
        """
        conflict = await load_conflict(self.db, conflict_id)
        if conflict.is_resolved:
            logger.info("Skipping escalation of resolved conflict", conflict_id=conflict_id)
            return

        first_escalation = not conflict.escalated
        conflict.resolution_notes = ESCALATION_NOTE

        notification = None
        if first_escalation:
            appointment = await self.db.get(Appointment, conflict.appointment_id)
            branch = await self.db.get(Branch, appointment.branch_id)
            conflict.escalated = True
            conflict.escalated_at = self.clock()
            notification = Notification(
                branch_id=branch.id,
                conflict_id=conflict.id,
                recipient=branch.management_recipient,
                channel=NotificationChannel.IN_APP.value,
                title="Booking conflict requires manual review",
                message=(
                    f"Conflict {conflict.uuid} ({conflict.conflict_type}) for appointment "
                    f"{appointment.confirmation_code} could not be resolved automatically "
                    f"after {conflict.auto_resolution_attempts} attempts."
                ),
                priority=NotificationPriority.HIGH.value,
                action_url=f"/dashboard/conflicts/{conflict.uuid}",
            )
            self.db.add(notification)

        await self.db.commit()

        if notification is None:
            logger.info("Conflict already escalated; notes updated", conflict_id=conflict_id)
            return

        logger.warning(
            "Conflict escalated to manual review",
            conflict_id=conflict_id,
            attempts=conflict.auto_resolution_attempts,
            recipient=notification.recipient,
        )
        await self.dispatcher.send(
            recipient=notification.recipient,
            channel=notification.channel,
            message=notification.message,
            priority=notification.priority,
            title=notification.title,
        )
