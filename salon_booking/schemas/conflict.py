from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from salon_booking.models.conflict import ConflictStatus, ConflictType


class DetectionContext(str, Enum):
    """What triggered a detection run; a service split reports OVERLAPPING."""

    BOOKING = "booking"
    SERVICE_SPLIT = "service_split"
    SCHEDULE_CHANGE = "schedule_change"
    HOURS_CHANGE = "hours_change"


class ResolutionStrategy(str, Enum):
    FIND_ALTERNATIVE_STAFF = "find_alternative_staff"
    RESCHEDULE_NEARBY = "reschedule_nearby"
    SPLIT_SERVICES = "split_services"
    WAITLIST = "waitlist"


class ActionType(str, Enum):
    UPDATE_APPOINTMENT = "update_appointment"
    REASSIGN_SERVICE = "reassign_service"
    CANCEL_APPOINTMENT = "cancel_appointment"
    CREATE_WAITLIST = "create_waitlist"
    NOTIFY_CUSTOMER = "notify_customer"


class ResolutionAction(BaseModel):
    type: ActionType
    target_id: int
    data: Dict[str, Any] = Field(default_factory=dict)


class ResolutionSuggestion(BaseModel):
    strategy: ResolutionStrategy
    confidence: float = Field(..., ge=0, le=1)
    description: str
    actions: List[ResolutionAction] = Field(default_factory=list)


class AlternativeSlot(BaseModel):
    start: datetime
    end: datetime
    staffId: int


class AlternativesSnapshot(BaseModel):
    slots: List[AlternativeSlot] = Field(default_factory=list)
    generatedAt: datetime


class Conflict(BaseModel):
    id: int
    uuid: UUID
    appointment_id: int
    conflicting_appointment_id: Optional[int] = None
    conflict_type: ConflictType
    status: ConflictStatus
    auto_resolution_attempts: int
    suggested_alternatives: Optional[AlternativesSnapshot] = None
    resolved_strategy: Optional[ResolutionStrategy] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    escalated: bool
    escalated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AutoResolutionResult(BaseModel):
    conflict_id: int
    resolved: bool
    status: ConflictStatus
    attempts: int
    escalated: bool
