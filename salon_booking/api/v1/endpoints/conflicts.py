from typing import List

from fastapi import APIRouter, Depends

from salon_booking.api.deps.engine import get_booking_engine, to_http_error
from salon_booking.core.exceptions import BookingEngineError
from salon_booking.models.conflict import ConflictStatus
from salon_booking.schemas.conflict import AutoResolutionResult, Conflict, ResolutionSuggestion
from salon_booking.services.booking_engine import BookingEngine

router = APIRouter()


@router.get("/{conflict_id}", response_model=Conflict)
async def get_conflict(
    conflict_id: int, engine: BookingEngine = Depends(get_booking_engine)
) -> Conflict:
    try:
        conflict = await engine.get_conflict(conflict_id)
    except BookingEngineError as e:
        raise to_http_error(e)
    return Conflict.model_validate(conflict)


@router.get("/{conflict_id}/suggestions", response_model=List[ResolutionSuggestion])
async def get_resolution_suggestions(
    conflict_id: int, engine: BookingEngine = Depends(get_booking_engine)
) -> List[ResolutionSuggestion]:
    """Resolution plans for a conflict, highest confidence first."""
    try:
        return await engine.generate_resolution_suggestions(conflict_id)
    except BookingEngineError as e:
        raise to_http_error(e)


@router.post("/{conflict_id}/auto-resolve", response_model=AutoResolutionResult)
async def auto_resolve_conflict(
    conflict_id: int, engine: BookingEngine = Depends(get_booking_engine)
) -> AutoResolutionResult:
    """
    Try to resolve a conflict automatically.

    Only plans at or above the confidence threshold are executed. Repeated
    failures escalate the conflict to branch management.
    """
    try:
        resolved = await engine.attempt_auto_resolution(conflict_id)
        conflict = await engine.get_conflict(conflict_id)
    except BookingEngineError as e:
        raise to_http_error(e)
    return AutoResolutionResult(
        conflict_id=conflict.id,
        resolved=resolved,
        status=ConflictStatus(conflict.status),
        attempts=conflict.auto_resolution_attempts,
        escalated=conflict.escalated,
    )


@router.post("/{conflict_id}/escalate", response_model=Conflict)
async def escalate_conflict(
    conflict_id: int, engine: BookingEngine = Depends(get_booking_engine)
) -> Conflict:
    """Hand a conflict to branch management for manual review."""
    try:
        await engine.escalate_to_manual(conflict_id)
        conflict = await engine.get_conflict(conflict_id)
    except BookingEngineError as e:
        raise to_http_error(e)
    return Conflict.model_validate(conflict)
