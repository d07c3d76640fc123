from datetime import datetime
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.config import EngineSettings
from salon_booking.core.exceptions import ConflictPersistenceFailure
from salon_booking.models.appointment import Appointment
from salon_booking.models.conflict import BookingConflict, ConflictStatus, ConflictType
from salon_booking.schemas.conflict import DetectionContext
from salon_booking.services.ledger import AppointmentLedger
from salon_booking.services.slots import SlotGenerator
from salon_booking.utils.intervals import utc_to_local, utcnow
from salon_booking.utils.specifications import AllOf, AnyOf, Comparator, FieldPredicate

logger = structlog.get_logger(__name__)


# Double bookings and service-split overlaps describe the same clash of a pair
OVERLAP_TYPES = (ConflictType.DOUBLE_BOOKING, ConflictType.OVERLAPPING)


def conflict_family(conflict_type: ConflictType) -> Tuple[ConflictType, ...]:
    return OVERLAP_TYPES if conflict_type in OVERLAP_TYPES else (conflict_type,)


def pair_spec(first_id: int, second_id: Optional[int], conflict_type: ConflictType):
    """Pending conflicts of the same family between two appointments, in either order."""
    pending = AllOf(
        FieldPredicate("status", Comparator.EQ, ConflictStatus.PENDING.value),
        FieldPredicate(
            "conflict_type", Comparator.IN, [t.value for t in conflict_family(conflict_type)]
        ),
    )
    if second_id is None:
        return pending & AllOf(
            FieldPredicate("appointment_id", Comparator.EQ, first_id),
            FieldPredicate("conflicting_appointment_id", Comparator.IS_NULL),
        )
    return pending & AnyOf(
        AllOf(
            FieldPredicate("appointment_id", Comparator.EQ, first_id),
            FieldPredicate("conflicting_appointment_id", Comparator.EQ, second_id),
        ),
        AllOf(
            FieldPredicate("appointment_id", Comparator.EQ, second_id),
            FieldPredicate("conflicting_appointment_id", Comparator.EQ, first_id),
        ),
    )


class ConflictDetector:
    """Finds and records conflicts around one appointment.

    Overlap hits are DOUBLE_BOOKING, or OVERLAPPING when a service split
    triggered the run. The appointment is also checked against its branch's
    opening hours (BRANCH_CLOSED) and its staff member's schedule and
    overrides (STAFF_UNAVAILABLE).
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[AppointmentLedger] = None,
        slots: Optional[SlotGenerator] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or EngineSettings()
        self.ledger = ledger or AppointmentLedger(db)
        self.slots = slots or SlotGenerator(db, ledger=self.ledger, settings=self.settings)
        self.clock = clock

    async def _existing(self, first_id: int, second_id: Optional[int], conflict_type: ConflictType):
        spec = pair_spec(first_id, second_id, conflict_type)
        result = await self.db.execute(
            select(BookingConflict)
            .where(spec.to_clause(BookingConflict))
            .order_by(BookingConflict.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _unavailability(self, target: Appointment) -> Optional[ConflictType]:
        """BRANCH_CLOSED or STAFF_UNAVAILABLE when the booking lost its footing."""
        branch = await self.slots.catalog.get_branch(target.branch_id)
        staff = await self.slots.catalog.get_staff(target.staff_id)
        day = utc_to_local(target.start_datetime, branch.timezone).date()
        interval = target.interval

        branch_windows = await self.slots.branch_windows(branch, day)
        if not any(window.contains(interval) for window in branch_windows):
            return ConflictType.BRANCH_CLOSED

        if not staff.can_take_bookings:
            return ConflictType.STAFF_UNAVAILABLE
        staff_day = await self.slots.staff_day(
            staff, branch, day, exclude_appointment_ids=(target.id,), branch_windows=branch_windows
        )
        blacked_out = any(interval.overlaps(blocked) for blocked in staff_day.blackouts)
        if blacked_out or not staff_day.covers(interval):
            return ConflictType.STAFF_UNAVAILABLE
        return None

    async def snapshot_alternatives(self, target: Appointment) -> dict:
        alternatives = await self.slots.suggest_alternatives(
            target,
            limit=self.settings.alternative_slot_count,
            search_days=self.settings.alternative_search_days,
        )
        return {
            "slots": [
                {
                    "start": slot.start.isoformat(),
                    "end": slot.end.isoformat(),
                    "staffId": slot.staff_id,
                }
                for slot in alternatives
            ],
            "generatedAt": self.clock().isoformat(),
        }

    async def detect_conflicts(
        self, appointment_id: int, context: DetectionContext = DetectionContext.BOOKING
    ) -> List[BookingConflict]:
        """Detect, record and return every pending conflict of the appointment.

        Records already pending for the same pair are returned instead of
        duplicated, so detecting for either side of a pair yields the same
        record. A failed write is logged and yields an empty list.
        """
        target = await self.ledger.get(appointment_id)
        if not target.is_active:
            return []

        overlap_type = (
            ConflictType.OVERLAPPING
            if context == DetectionContext.SERVICE_SPLIT
            else ConflictType.DOUBLE_BOOKING
        )
        hits = await self.ledger.find_overlapping(
            target.staff_id,
            target.start_datetime,
            target.end_datetime,
            exclude_ids=(target.id,),
        )
        findings = [(overlap_type, other.id) for other in hits]
        unavailable = await self._unavailability(target)
        if unavailable is not None:
            findings.append((unavailable, None))

        if not findings:
            return []

        conflicts: List[BookingConflict] = []
        created: List[BookingConflict] = []
        snapshot = None
        for conflict_type, other_id in findings:
            existing = await self._existing(target.id, other_id, conflict_type)
            if existing is not None:
                conflicts.append(existing)
                continue
            if snapshot is None:
                snapshot = await self.snapshot_alternatives(target)
            conflict = BookingConflict(
                appointment_id=target.id,
                conflicting_appointment_id=other_id,
                conflict_type=conflict_type.value,
                status=ConflictStatus.PENDING.value,
                suggested_alternatives=snapshot,
                auto_resolution_attempts=0,
            )
            conflicts.append(conflict)
            created.append(conflict)

        if created:
            target_id = target.id
            try:
                self.db.add_all(created)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                failure = ConflictPersistenceFailure(
                    f"Could not record conflicts for appointment {target_id}"
                )
                logger.error(
                    "Conflict detection aborted",
                    appointment_id=target_id,
                    context=context.value,
                    error=str(failure),
                    cause=str(e),
                )
                return []

        for conflict in created:
            logger.info(
                "Conflict detected",
                conflict_id=conflict.id,
                conflict_type=conflict.conflict_type,
                appointment_id=conflict.appointment_id,
                conflicting_appointment_id=conflict.conflicting_appointment_id,
                context=context.value,
            )
        return conflicts
