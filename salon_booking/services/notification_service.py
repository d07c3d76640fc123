from typing import Optional

import structlog

from salon_booking.core.celery import celery_app

logger = structlog.get_logger(__name__)


@celery_app.task(bind=True, name="salon_booking.services.notification_service.deliver_notification")
def deliver_notification(
    self,
    recipient: str,
    channel: str,
    message: str,
    priority: str = "normal",
    title: Optional[str] = None,
):
    """Hand a notification to the delivery channel.

    Rendering and provider integrations (SMTP, SMS gateways, push) live outside
    this service; the worker only records the hand-off.
    """
    logger.info(
        "Delivering notification",
        task_id=self.request.id,
        recipient=recipient,
        channel=channel,
        priority=priority,
        title=title,
    )
    return {"recipient": recipient, "channel": channel, "status": "handed_off"}


class NotificationDispatcher:
    """Fire-and-forget notification sender backed by a Celery task.

    ``send`` never raises: a broker outage is logged and the caller's
    already-committed work stands.
    """

    def __init__(self, task=deliver_notification):
        self.task = task

    async def send(
        self,
        recipient: str,
        channel: str,
        message: str,
        priority: str = "normal",
        title: Optional[str] = None,
    ) -> None:
        try:
            self.task.delay(
                recipient=recipient,
                channel=channel,
                message=message,
                priority=priority,
                title=title,
            )
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                recipient=recipient,
                channel=channel,
                priority=priority,
                error=str(e),
            )
            return
        logger.debug("Notification queued", recipient=recipient, channel=channel, priority=priority)
