from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.config import EngineSettings
from salon_booking.core.redis import SlotCache
from salon_booking.core.retry import RetryPolicy, exponential_backoff
from salon_booking.models.appointment import Appointment
from salon_booking.models.conflict import BookingConflict
from salon_booking.schemas.appointment import AppointmentCreate
from salon_booking.schemas.conflict import DetectionContext, ResolutionSuggestion
from salon_booking.schemas.scheduling import TimeSlot
from salon_booking.services.booking_rules import BookingRuleEngine
from salon_booking.services.conflict_detection import ConflictDetector
from salon_booking.services.conflict_resolution import ConflictResolver
from salon_booking.services.escalation import EscalationManager, load_conflict
from salon_booking.services.ledger import AppointmentLedger
from salon_booking.services.notification_service import NotificationDispatcher
from salon_booking.services.providers import (
    CatalogProvider,
    OverrideProvider,
    StaffScheduleProvider,
    WorkingHoursProvider,
)
from salon_booking.services.slots import SlotGenerator
from salon_booking.utils.intervals import utcnow

logger = structlog.get_logger(__name__)


class BookingEngine:
    """Availability and conflict resolution engine for one unit of work.

    Built per request around a database session; the slot cache, dispatcher,
    clock and settings are shared clients handed in by the composition root.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[EngineSettings] = None,
        slot_cache: Optional[SlotCache] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or EngineSettings()
        self.clock = clock

        self.catalog = CatalogProvider(db)
        self.ledger = AppointmentLedger(db, catalog=self.catalog, slot_cache=slot_cache, clock=clock)
        self.rules = BookingRuleEngine(db, catalog=self.catalog, clock=clock)
        self.slots = SlotGenerator(
            db,
            ledger=self.ledger,
            rules=self.rules,
            settings=self.settings,
            slot_cache=slot_cache,
            read_policy=RetryPolicy(
                max_attempts=self.settings.read_retry_attempts,
                backoff=exponential_backoff(self.settings.read_retry_backoff_seconds),
            ),
            catalog=self.catalog,
            hours=WorkingHoursProvider(db),
            schedules=StaffScheduleProvider(db),
            overrides=OverrideProvider(db),
        )
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.detector = ConflictDetector(
            db, ledger=self.ledger, slots=self.slots, settings=self.settings, clock=clock
        )
        self.escalation = EscalationManager(db, dispatcher=self.dispatcher, clock=clock)
        self.resolver = ConflictResolver(
            db,
            ledger=self.ledger,
            slots=self.slots,
            escalation=self.escalation,
            dispatcher=self.dispatcher,
            settings=self.settings,
            clock=clock,
        )

    # Availability

    async def get_available_slots(
        self,
        branch_id: int,
        service_ids: Sequence[int],
        day: date,
        staff_id: Optional[int] = None,
        granularity_minutes: Optional[int] = None,
        include_unavailable: bool = False,
    ) -> List[TimeSlot]:
        return await self.slots.get_available_slots(
            branch_id,
            service_ids,
            day,
            staff_id=staff_id,
            granularity_minutes=granularity_minutes,
            include_unavailable=include_unavailable,
        )

    async def is_slot_available(self, staff_id: int, start: datetime, duration_minutes: int) -> bool:
        return await self.slots.is_slot_available(staff_id, start, duration_minutes)

    # Ledger writes

    async def create_appointment(self, data: AppointmentCreate) -> Appointment:
        appointment = await self.ledger.create(data)
        await self._after_write(appointment.id, appointment.branch_id)
        return await self.ledger.get(appointment.id)

    async def reschedule_appointment(
        self,
        appointment_id: int,
        new_start: datetime,
        staff_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        appointment = await self.ledger.reschedule(
            appointment_id, new_start, staff_id=staff_id, reason=reason
        )
        await self._after_write(appointment.id, appointment.branch_id)
        return await self.ledger.get(appointment.id)

    async def _after_write(self, appointment_id: int, branch_id: int) -> None:
        """Detect conflicts and, when the branch opts in, resolve them right away."""
        conflicts = await self.detector.detect_conflicts(appointment_id)
        if not conflicts:
            return
        branch = await self.catalog.get_branch(branch_id)
        if not branch.settings.auto_resolve_conflicts:
            return
        for conflict_id in [c.id for c in conflicts if not c.is_resolved]:
            await self.resolver.attempt_auto_resolution(conflict_id)

    # Conflicts

    async def detect_conflicts(
        self, appointment_id: int, context: DetectionContext = DetectionContext.BOOKING
    ) -> List[BookingConflict]:
        return await self.detector.detect_conflicts(appointment_id, context)

    async def get_conflict(self, conflict_id: int) -> BookingConflict:
        return await load_conflict(self.db, conflict_id)

    async def generate_resolution_suggestions(self, conflict_id: int) -> List[ResolutionSuggestion]:
        conflict = await load_conflict(self.db, conflict_id)
        return await self.resolver.generate_resolution_suggestions(conflict)

    async def attempt_auto_resolution(self, conflict_id: int) -> bool:
        return await self.resolver.attempt_auto_resolution(conflict_id)

    async def escalate_to_manual(self, conflict_id: int) -> None:
        await self.escalation.escalate_to_manual(conflict_id)
