import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.database import get_db
from salon_booking.core.exceptions import (
    BookingEngineError,
    InvalidInterval,
    NotFound,
    SlotUnavailable,
)
from salon_booking.services.booking_engine import BookingEngine
from salon_booking.services.ledger import InvalidStatusTransition
from salon_booking.utils.intervals import utcnow

logger = structlog.get_logger(__name__)


async def get_booking_engine(
    request: Request, db: AsyncSession = Depends(get_db)
) -> BookingEngine:
    """
    Build the engine for this request from the clients created at startup.

    The session is per request; settings, slot cache, dispatcher and clock are
    shared and live on ``app.state``.
    """
    state = request.app.state
    return BookingEngine(
        db,
        settings=state.engine_settings,
        slot_cache=getattr(state, "slot_cache", None),
        dispatcher=state.dispatcher,
        clock=getattr(state, "clock", utcnow),
    )


def to_http_error(error: BookingEngineError) -> HTTPException:
    """Map domain errors onto HTTP responses."""
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidInterval):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, SlotUnavailable):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(error),
                "staff_id": error.staff_id,
                "conflicting_appointment_id": error.conflicting_id,
            },
        )
    if isinstance(error, InvalidStatusTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    logger.error("Unhandled booking engine error", error=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Booking engine error"
    )
